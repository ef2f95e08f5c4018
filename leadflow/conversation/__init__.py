from leadflow.conversation.intent_scorer import IntentDetectionResult, detect_intent
from leadflow.conversation.lead_flow import process_capture_step, process_qualification_step
from leadflow.conversation.state_machine import (
    DialogueStateMachine,
    Transition,
    TransitionTrigger,
    get_client_action,
)

__all__ = [
    "DialogueStateMachine", "Transition", "TransitionTrigger", "get_client_action",
    "IntentDetectionResult", "detect_intent",
    "process_capture_step", "process_qualification_step",
]
