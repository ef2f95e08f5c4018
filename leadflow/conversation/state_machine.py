"""
Dialogue state machine for the lead capture conversation.

Six modes (INFO, INTENT_CHECK, LEAD_CAPTURE, QUALIFICATION, BOOKING,
CLOSURE) with explicit transitions. Each visitor message is routed to the
handler for the session's current mode, which returns a
StateTransitionResult describing the next mode, the reply and the side
effects. The machine never mutates the session or touches storage; the
caller applies the result in one write.

Usage:
    sm = DialogueStateMachine(answer_provider, config)
    result = await sm.process_message(session, "How much does it cost?", lead_config)
    assert result.next_mode == ConversationMode.INTENT_CHECK
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from leadflow import prompts
from leadflow.config import AppConfig
from leadflow.conversation.intent_scorer import (
    IntentDetectionResult,
    detect_intent,
    is_explicit_booking_request,
    is_higher_intent,
    meets_intent_trigger,
)
from leadflow.conversation.lead_flow import (
    StageRoute,
    complete_capture,
    first_capture_step,
    process_capture_step,
    process_qualification_step,
)
from leadflow.errors import InvalidTransitionError, RetrievalError
from leadflow.logging_context import get_turn_logger
from leadflow.schemas.action_schema import (
    CaptureLead,
    ClientAction,
    ClientActionType,
    NotificationType,
    SaveQualification,
    SendNotification,
    ShowBooking,
    StateAction,
    StateTransitionResult,
    UpdateIntent,
)
from leadflow.schemas.session_schema import (
    BookingStatus,
    ConversationMode,
    ConversationSession,
    IntentLevel,
    LeadCaptureConfig,
    LeadCaptureStep,
)
from leadflow.services.answer_provider import AnswerProvider, AnswerResult, answer_with_timeout

logger = get_turn_logger(__name__)

_AFFIRMATIVE_RE = [
    re.compile(r"\b(yes|yeah|sure|ok|okay|please|definitely|absolutely)\b", re.IGNORECASE),
    re.compile(r"\b(connect|talk|call|schedule|book)\b", re.IGNORECASE),
    re.compile(r"\b(that would be|sounds) (great|good|nice|helpful)", re.IGNORECASE),
]
_DEFERRING_RE = [
    re.compile(r"\b(no|not yet|maybe later|first|question|more info)\b", re.IGNORECASE),
    re.compile(r"\b(wait|hold on|before that)\b", re.IGNORECASE),
]
_BOOKING_ACCEPT_RE = re.compile(r"\b(yes|yeah|sure|ok|book|schedule|please)\b", re.IGNORECASE)
_BOOKING_DECLINE_RE = re.compile(r"\b(no|not now|later|maybe|skip)\b", re.IGNORECASE)
_QUESTION_RE = re.compile(
    r"\?|\b(what|how|when|where|why|can|could|would|is|are|do|does)\b", re.IGNORECASE
)

_STEP_INPUTS = {
    LeadCaptureStep.ASK_EMAIL: ClientActionType.SHOW_EMAIL_INPUT,
    LeadCaptureStep.ASK_NAME: ClientActionType.SHOW_NAME_INPUT,
    LeadCaptureStep.ASK_REASON: ClientActionType.SHOW_REASON_INPUT,
}


def is_question(message: str) -> bool:
    return bool(_QUESTION_RE.search(message))


def classify_booking_reply(message: str) -> Optional[bool]:
    """True for an accept, False for a decline, None when unclear."""
    if _BOOKING_DECLINE_RE.search(message):
        return False
    if _BOOKING_ACCEPT_RE.search(message):
        return True
    return None


def score_turn(
    session: ConversationSession, message: str, lead_config: LeadCaptureConfig
) -> tuple[IntentDetectionResult, IntentLevel, list[StateAction]]:
    """
    Score the message against the session's accumulated signals.

    The returned level never drops below the session's. UPDATE_INTENT is
    emitted when the level rose or new signals appeared, and a
    HIGH_INTENT_VISITOR notification the first time the level reaches HIGH.
    """
    intent = detect_intent(
        message,
        page_url=session.page_url or "",
        existing_signals=session.intent_signals,
        keywords=lead_config.intent_keywords,
        high_intent_pages=lead_config.high_intent_pages,
    )
    level = intent.level
    if is_higher_intent(session.intent_level, level):
        level = session.intent_level

    actions: list[StateAction] = []
    rose = is_higher_intent(level, session.intent_level)
    if rose or len(intent.signals) > len(session.intent_signals):
        actions.append(UpdateIntent(level=level, signals=intent.signals))
    if rose and level == IntentLevel.HIGH:
        actions.append(SendNotification(notification_type=NotificationType.HIGH_INTENT_VISITOR))
    return intent, level, actions


def can_start_capture(
    session: ConversationSession,
    level: IntentLevel,
    lead_config: LeadCaptureConfig,
    min_exchanges: int,
) -> bool:
    return (
        lead_config.lead_capture_enabled
        and session.message_count >= min_exchanges
        and session.lead_id is None
        and session.mode != ConversationMode.LEAD_CAPTURE
        and meets_intent_trigger(level, lead_config.lead_capture_trigger)
    )


class TransitionTrigger(str, Enum):
    """Events that move the dialogue between modes."""
    ANSWERED = "answered"
    RETRIEVAL_FAILED = "retrieval_failed"
    INTENT_DETECTED = "intent_detected"
    BOOKING_REQUESTED = "booking_requested"
    CONFIRMED = "confirmed"
    DEFERRED = "deferred"
    FIELD_RECEIVED = "field_received"
    CAPTURE_ABANDONED = "capture_abandoned"
    START_QUALIFICATION = "start_qualification"
    ANSWER_RECEIVED = "answer_received"
    OFFER_BOOKING = "offer_booking"
    CLOSE = "close"
    BOOKING_ACCEPTED = "booking_accepted"
    BOOKING_DECLINED = "booking_declined"
    REPROMPT = "reprompt"
    FOLLOW_UP = "follow_up"
    ACKNOWLEDGED = "acknowledged"


@dataclass(frozen=True)
class Transition:
    """A single valid mode transition."""
    from_mode: ConversationMode
    to_mode: ConversationMode
    trigger: TransitionTrigger


_ROUTE_TRIGGERS = {
    ConversationMode.QUALIFICATION: TransitionTrigger.START_QUALIFICATION,
    ConversationMode.BOOKING: TransitionTrigger.OFFER_BOOKING,
    ConversationMode.CLOSURE: TransitionTrigger.CLOSE,
}


class DialogueStateMachine:
    """
    Deterministic turn processor for the lead capture dialogue.

    Every mode change goes through ``transition()``, which rejects anything
    not listed in TRANSITIONS. Given the same session, message, config and a
    deterministic answer provider, ``process_message`` returns the same
    result.
    """

    TRANSITIONS: list[Transition] = [
        # --- Info ---
        Transition(ConversationMode.INFO, ConversationMode.INFO, TransitionTrigger.ANSWERED),
        Transition(ConversationMode.INFO, ConversationMode.INFO, TransitionTrigger.RETRIEVAL_FAILED),
        Transition(ConversationMode.INFO, ConversationMode.INTENT_CHECK,
                   TransitionTrigger.INTENT_DETECTED),
        Transition(ConversationMode.INFO, ConversationMode.LEAD_CAPTURE,
                   TransitionTrigger.BOOKING_REQUESTED),

        # --- Intent check ---
        Transition(ConversationMode.INTENT_CHECK, ConversationMode.LEAD_CAPTURE,
                   TransitionTrigger.CONFIRMED),
        Transition(ConversationMode.INTENT_CHECK, ConversationMode.INFO, TransitionTrigger.DEFERRED),
        Transition(ConversationMode.INTENT_CHECK, ConversationMode.INTENT_CHECK,
                   TransitionTrigger.RETRIEVAL_FAILED),

        # --- Lead capture ---
        Transition(ConversationMode.LEAD_CAPTURE, ConversationMode.LEAD_CAPTURE,
                   TransitionTrigger.FIELD_RECEIVED),
        Transition(ConversationMode.LEAD_CAPTURE, ConversationMode.INFO,
                   TransitionTrigger.CAPTURE_ABANDONED),
        Transition(ConversationMode.LEAD_CAPTURE, ConversationMode.QUALIFICATION,
                   TransitionTrigger.START_QUALIFICATION),
        Transition(ConversationMode.LEAD_CAPTURE, ConversationMode.BOOKING,
                   TransitionTrigger.OFFER_BOOKING),
        Transition(ConversationMode.LEAD_CAPTURE, ConversationMode.CLOSURE, TransitionTrigger.CLOSE),

        # --- Qualification ---
        Transition(ConversationMode.QUALIFICATION, ConversationMode.QUALIFICATION,
                   TransitionTrigger.ANSWER_RECEIVED),
        Transition(ConversationMode.QUALIFICATION, ConversationMode.BOOKING,
                   TransitionTrigger.OFFER_BOOKING),
        Transition(ConversationMode.QUALIFICATION, ConversationMode.CLOSURE, TransitionTrigger.CLOSE),

        # --- Booking ---
        Transition(ConversationMode.BOOKING, ConversationMode.CLOSURE,
                   TransitionTrigger.BOOKING_ACCEPTED),
        Transition(ConversationMode.BOOKING, ConversationMode.CLOSURE,
                   TransitionTrigger.BOOKING_DECLINED),
        Transition(ConversationMode.BOOKING, ConversationMode.BOOKING, TransitionTrigger.REPROMPT),

        # --- Closure ---
        Transition(ConversationMode.CLOSURE, ConversationMode.INFO, TransitionTrigger.FOLLOW_UP),
        Transition(ConversationMode.CLOSURE, ConversationMode.CLOSURE, TransitionTrigger.ACKNOWLEDGED),
        Transition(ConversationMode.CLOSURE, ConversationMode.CLOSURE,
                   TransitionTrigger.RETRIEVAL_FAILED),
    ]

    def __init__(self, answer_provider: AnswerProvider, config: AppConfig) -> None:
        self._answer_provider = answer_provider
        self._config = config
        self._handlers = {
            ConversationMode.INFO: self._handle_info,
            ConversationMode.INTENT_CHECK: self._handle_intent_check,
            ConversationMode.LEAD_CAPTURE: self._handle_lead_capture,
            ConversationMode.QUALIFICATION: self._handle_qualification,
            ConversationMode.BOOKING: self._handle_booking,
            ConversationMode.CLOSURE: self._handle_closure,
        }

    # ------------------------------------------------------------------
    # Transition table
    # ------------------------------------------------------------------

    def transition(self, from_mode: ConversationMode, trigger: TransitionTrigger) -> ConversationMode:
        """
        Resolve the target mode for a trigger.

        Raises:
            InvalidTransitionError: If no transition exists for the pair.
        """
        for t in self.TRANSITIONS:
            if t.from_mode == from_mode and t.trigger == trigger:
                logger.debug(
                    "Mode transition: %s -> %s (trigger: %s)",
                    from_mode.value, t.to_mode.value, trigger.value,
                )
                return t.to_mode

        valid = [t.value for t in self.get_valid_triggers(from_mode)]
        raise InvalidTransitionError(
            f"No valid transition from '{from_mode.value}' "
            f"with trigger '{trigger.value}'. Valid triggers: {valid}"
        )

    def get_valid_triggers(self, mode: ConversationMode) -> list[TransitionTrigger]:
        return [t.trigger for t in self.TRANSITIONS if t.from_mode == mode]

    # ------------------------------------------------------------------
    # Turn processing
    # ------------------------------------------------------------------

    async def process_message(
        self,
        session: ConversationSession,
        message: str,
        lead_config: LeadCaptureConfig,
        system_instructions: str = "",
    ) -> StateTransitionResult:
        """Route the message to the handler for the session's current mode."""
        handler = self._handlers[session.mode]
        return await handler(session, message, lead_config, system_instructions)

    def _result(
        self,
        session: ConversationSession,
        trigger: TransitionTrigger,
        response: str,
        **changes,
    ) -> StateTransitionResult:
        """Build a result that carries over any sub-state not in ``changes``."""
        fields = {
            "intent_level": session.intent_level,
            "lead_capture_step": session.lead_capture_step,
            "capture_attempts": session.capture_attempts,
            "qualification_step": session.qualification_step,
        }
        fields.update(changes)
        next_mode = self.transition(session.mode, trigger)
        return StateTransitionResult(next_mode=next_mode, response=response, **fields)

    async def _answer(
        self,
        session: ConversationSession,
        message: str,
        lead_config: LeadCaptureConfig,
        system_instructions: str,
    ) -> AnswerResult:
        context = prompts.build_conversation_context(
            session.message_history, self._config.session.context_window
        )
        return await answer_with_timeout(
            self._answer_provider,
            session.chatbot_id,
            f"{context}{message}",
            prompts.build_answer_instructions(system_instructions),
            lead_config.style_hints(),
            timeout=self._config.timeouts.answer_timeout_sec,
        )

    def _apology(
        self, session: ConversationSession, actions: list, level: IntentLevel
    ) -> StateTransitionResult:
        return self._result(
            session,
            TransitionTrigger.RETRIEVAL_FAILED,
            prompts.RETRIEVAL_APOLOGY,
            intent_level=level,
            actions=actions,
            retrieval_failed=True,
        )

    def _route(
        self,
        session: ConversationSession,
        route: StageRoute,
        lead_config: LeadCaptureConfig,
        actions: list,
        **changes,
    ) -> StateTransitionResult:
        """Apply a post-capture / post-qualification route."""
        if route.offer_booking:
            actions.append(ShowBooking(
                booking_link=lead_config.booking_link or "",
                cta_text=lead_config.booking_cta_text,
            ))
        return self._result(
            session,
            _ROUTE_TRIGGERS[route.mode],
            route.response,
            should_offer_booking=route.offer_booking,
            actions=actions,
            **changes,
        )

    async def _answer_and_move(
        self,
        session: ConversationSession,
        message: str,
        lead_config: LeadCaptureConfig,
        system_instructions: str,
        trigger: TransitionTrigger,
    ) -> StateTransitionResult:
        """Score intent, answer from the knowledge base and move via ``trigger``."""
        _, level, actions = score_turn(session, message, lead_config)
        try:
            answer = await self._answer(session, message, lead_config, system_instructions)
        except RetrievalError as exc:
            logger.warning("Answer provider failed in %s: %s", session.mode.value, exc)
            return self._apology(session, actions, level)

        return self._result(
            session,
            trigger,
            answer.text,
            intent_level=level,
            actions=actions,
            sources=answer.sources,
        )

    # ------------------------------------------------------------------
    # Mode handlers
    # ------------------------------------------------------------------

    async def _handle_info(
        self,
        session: ConversationSession,
        message: str,
        lead_config: LeadCaptureConfig,
        system_instructions: str,
    ) -> StateTransitionResult:
        _, level, actions = score_turn(session, message, lead_config)

        try:
            answer = await self._answer(session, message, lead_config, system_instructions)
        except RetrievalError as exc:
            logger.warning("Answer provider failed in INFO: %s", exc)
            return self._apology(session, actions, level)

        min_exchanges = self._config.session.min_exchanges_before_capture
        if not can_start_capture(session, level, lead_config, min_exchanges):
            return self._result(
                session,
                TransitionTrigger.ANSWERED,
                answer.text,
                intent_level=level,
                actions=actions,
                sources=answer.sources,
            )

        if is_explicit_booking_request(message):
            logger.debug("Explicit booking request, skipping intent check")
            return self._result(
                session,
                TransitionTrigger.BOOKING_REQUESTED,
                prompts.with_prompt(answer.text, prompts.ASK_EMAIL_PROMPT),
                intent_level=level,
                lead_capture_step=first_capture_step(),
                capture_attempts=0,
                should_capture_lead=True,
                actions=actions,
                sources=answer.sources,
            )

        return self._result(
            session,
            TransitionTrigger.INTENT_DETECTED,
            prompts.with_prompt(answer.text, prompts.INTENT_CHECK_PROMPT),
            intent_level=level,
            actions=actions,
            sources=answer.sources,
        )

    async def _handle_intent_check(
        self,
        session: ConversationSession,
        message: str,
        lead_config: LeadCaptureConfig,
        system_instructions: str,
    ) -> StateTransitionResult:
        affirmative = any(p.search(message) for p in _AFFIRMATIVE_RE)
        deferring = any(p.search(message) for p in _DEFERRING_RE)

        if affirmative and not deferring and lead_config.lead_capture_enabled:
            return self._result(
                session,
                TransitionTrigger.CONFIRMED,
                prompts.ASK_EMAIL_PROMPT,
                lead_capture_step=first_capture_step(),
                capture_attempts=0,
                should_capture_lead=True,
            )

        if is_question(message):
            # deferred with a follow-up question: answer it on the way back to INFO
            return await self._answer_and_move(
                session, message, lead_config, system_instructions, TransitionTrigger.DEFERRED
            )
        return self._result(session, TransitionTrigger.DEFERRED, prompts.BACK_TO_INFO)

    async def _handle_lead_capture(
        self,
        session: ConversationSession,
        message: str,
        lead_config: LeadCaptureConfig,
        system_instructions: str,
    ) -> StateTransitionResult:
        outcome = process_capture_step(
            session.lead_capture_step,
            message,
            lead_config,
            attempts=session.capture_attempts,
            max_retries=self._config.session.max_capture_retries,
        )
        actions: list = []
        if outcome.lead_data is not None:
            actions.append(CaptureLead(data=outcome.lead_data))

        if outcome.abandoned:
            return self._result(
                session,
                TransitionTrigger.CAPTURE_ABANDONED,
                outcome.response,
                lead_capture_step=None,
                capture_attempts=0,
                actions=actions,
            )

        if outcome.completed:
            if lead_config.notify_on_lead:
                actions.append(SendNotification(notification_type=NotificationType.NEW_LEAD))
            return self._route(
                session,
                complete_capture(lead_config),
                lead_config,
                actions,
                lead_capture_step=LeadCaptureStep.COMPLETED,
                capture_attempts=0,
                qualification_step=0,
            )

        return self._result(
            session,
            TransitionTrigger.FIELD_RECEIVED,
            outcome.response,
            lead_capture_step=outcome.next_step,
            capture_attempts=outcome.attempts,
            should_capture_lead=True,
            actions=actions,
        )

    async def _handle_qualification(
        self,
        session: ConversationSession,
        message: str,
        lead_config: LeadCaptureConfig,
        system_instructions: str,
    ) -> StateTransitionResult:
        outcome = process_qualification_step(session.qualification_step, message, lead_config)
        actions: list = []
        if outcome.question_id is not None:
            actions.append(SaveQualification(question_id=outcome.question_id, answer=outcome.answer or ""))

        if outcome.route is not None:
            return self._route(
                session, outcome.route, lead_config, actions, qualification_step=outcome.next_step
            )

        return self._result(
            session,
            TransitionTrigger.ANSWER_RECEIVED,
            outcome.response,
            qualification_step=outcome.next_step,
            actions=actions,
        )

    async def _handle_booking(
        self,
        session: ConversationSession,
        message: str,
        lead_config: LeadCaptureConfig,
        system_instructions: str,
    ) -> StateTransitionResult:
        reply = classify_booking_reply(message)
        actions: list = []
        if lead_config.booking_link and reply is not False:
            actions.append(ShowBooking(
                booking_link=lead_config.booking_link,
                cta_text=lead_config.booking_cta_text,
            ))

        if reply is True:
            if lead_config.notify_on_booking:
                actions.append(SendNotification(notification_type=NotificationType.BOOKING_SCHEDULED))
            return self._result(
                session,
                TransitionTrigger.BOOKING_ACCEPTED,
                lead_config.booking_confirmation_message or prompts.BOOKING_ACCEPTED_DEFAULT,
                booking_status=BookingStatus.LINK_SHARED,
                actions=actions,
            )

        if reply is False:
            return self._result(
                session,
                TransitionTrigger.BOOKING_DECLINED,
                lead_config.closure_message or prompts.CLOSURE_DEFAULT,
                booking_status=BookingStatus.DECLINED,
            )

        return self._result(
            session,
            TransitionTrigger.REPROMPT,
            prompts.BOOKING_OFFER,
            should_offer_booking=True,
            actions=actions,
        )

    async def _handle_closure(
        self,
        session: ConversationSession,
        message: str,
        lead_config: LeadCaptureConfig,
        system_instructions: str,
    ) -> StateTransitionResult:
        if is_question(message):
            return await self._answer_and_move(
                session, message, lead_config, system_instructions, TransitionTrigger.FOLLOW_UP
            )
        return self._result(session, TransitionTrigger.ACKNOWLEDGED, prompts.CLOSURE_ACK)


def get_client_action(
    result: StateTransitionResult, lead_config: LeadCaptureConfig
) -> ClientAction:
    """Translate a transition result into the widget instruction for this turn."""
    if result.next_mode == ConversationMode.LEAD_CAPTURE and result.lead_capture_step in _STEP_INPUTS:
        return ClientAction(type=_STEP_INPUTS[result.lead_capture_step], prompt=result.response)

    if result.next_mode == ConversationMode.QUALIFICATION:
        questions = lead_config.active_questions
        if result.qualification_step < len(questions):
            return ClientAction(
                type=ClientActionType.SHOW_QUALIFICATION,
                question=questions[result.qualification_step],
            )

    booking = result.actions_of(ShowBooking)
    if booking:
        return ClientAction(
            type=ClientActionType.SHOW_BOOKING_LINK,
            url=booking[0].booking_link,
            cta_text=booking[0].cta_text,
        )

    if result.next_mode == ConversationMode.CLOSURE:
        return ClientAction(type=ClientActionType.CONVERSATION_CLOSED, message=result.response)

    return ClientAction(type=ClientActionType.NONE)
