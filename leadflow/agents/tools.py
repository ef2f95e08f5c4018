"""
Tools the agent path calls during a turn.

Each tool takes the turn's ToolContext, may record session changes on it,
and returns a JSON string observation the agent reasons over. Tools never
write to storage; the turn handler applies ``ctx.transition()`` in one
write, exactly like a state machine result.
"""

import json
from dataclasses import dataclass, field
from typing import Optional

from leadflow import prompts
from leadflow.config import AppConfig
from leadflow.conversation.intent_scorer import get_intent_summary
from leadflow.conversation.lead_flow import (
    StageRoute,
    complete_capture,
    extract_email,
    first_capture_step,
    process_capture_step,
    process_qualification_step,
)
from leadflow.conversation.state_machine import score_turn
from leadflow.errors import RetrievalError
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
)
from leadflow.schemas.session_schema import (
    BookingStatus,
    ConversationMode,
    ConversationSession,
    IntentLevel,
    LeadCaptureConfig,
    LeadCaptureStep,
)
from leadflow.services.answer_provider import AnswerProvider, answer_with_timeout

logger = get_turn_logger(__name__)

_STEP_INPUTS = {
    LeadCaptureStep.ASK_EMAIL: ClientActionType.SHOW_EMAIL_INPUT,
    LeadCaptureStep.ASK_NAME: ClientActionType.SHOW_NAME_INPUT,
    LeadCaptureStep.ASK_REASON: ClientActionType.SHOW_REASON_INPUT,
}


@dataclass
class ToolContext:
    """Mutable per-turn state shared by the tools."""

    session: ConversationSession
    message: str
    lead_config: LeadCaptureConfig
    instructions: str
    answer_provider: AnswerProvider
    config: AppConfig
    mode: ConversationMode = ConversationMode.INFO
    intent_level: IntentLevel = IntentLevel.LOW
    replies: list[str] = field(default_factory=list)
    actions: list[StateAction] = field(default_factory=list)
    client_actions: list[ClientAction] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)
    lead_capture_step: Optional[LeadCaptureStep] = None
    capture_attempts: int = 0
    qualification_step: int = 0
    booking_status: Optional[BookingStatus] = None
    offered_booking: bool = False
    retrieval_failed: bool = False

    @classmethod
    def for_turn(
        cls,
        session: ConversationSession,
        message: str,
        lead_config: LeadCaptureConfig,
        instructions: str,
        answer_provider: AnswerProvider,
        config: AppConfig,
    ) -> "ToolContext":
        # the agent has no separate intent-check step
        mode = session.mode
        if mode == ConversationMode.INTENT_CHECK:
            mode = ConversationMode.INFO
        return cls(
            session=session,
            message=message,
            lead_config=lead_config,
            instructions=instructions,
            answer_provider=answer_provider,
            config=config,
            mode=mode,
            intent_level=session.intent_level,
            lead_capture_step=session.lead_capture_step,
            capture_attempts=session.capture_attempts,
            qualification_step=session.qualification_step,
        )

    @property
    def response(self) -> str:
        return "\n\n".join(reply for reply in self.replies if reply)

    def transition(self) -> StateTransitionResult:
        return StateTransitionResult(
            next_mode=self.mode,
            response=self.response,
            actions=list(self.actions),
            should_capture_lead=self.mode == ConversationMode.LEAD_CAPTURE,
            should_offer_booking=self.offered_booking,
            intent_level=self.intent_level,
            lead_capture_step=self.lead_capture_step,
            capture_attempts=self.capture_attempts,
            qualification_step=self.qualification_step,
            booking_status=self.booking_status,
            sources=list(self.sources),
            retrieval_failed=self.retrieval_failed,
        )


def _step_action(step: Optional[LeadCaptureStep], prompt: str) -> Optional[ClientAction]:
    if step not in _STEP_INPUTS:
        return None
    return ClientAction(type=_STEP_INPUTS[step], prompt=prompt)


async def analyze_intent(ctx: ToolContext) -> str:
    """Score the visitor's buying intent from their message and page."""
    intent, level, actions = score_turn(ctx.session, ctx.message, ctx.lead_config)
    ctx.intent_level = level
    ctx.actions.extend(actions)
    return json.dumps({
        "intent_level": level.value,
        "signals": intent.signals,
        "summary": get_intent_summary(intent),
    })


async def answer_question(ctx: ToolContext) -> str:
    """Answer the visitor's question from the chatbot's knowledge base."""
    context = prompts.build_conversation_context(
        ctx.session.message_history, ctx.config.session.context_window
    )
    try:
        answer = await answer_with_timeout(
            ctx.answer_provider,
            ctx.session.chatbot_id,
            f"{context}{ctx.message}",
            prompts.build_answer_instructions(ctx.instructions),
            ctx.lead_config.style_hints(),
            timeout=ctx.config.timeouts.answer_timeout_sec,
        )
    except RetrievalError as exc:
        logger.warning("answer_question failed: %s", exc)
        ctx.retrieval_failed = True
        ctx.replies.append(prompts.RETRIEVAL_APOLOGY)
        return json.dumps({"success": False, "error": str(exc)})

    ctx.replies.append(answer.text)
    ctx.sources.extend(answer.sources)
    return json.dumps({"success": True, "answer": answer.text, "sources": answer.sources})


async def offer_booking(ctx: ToolContext) -> str:
    """Share the scheduling link when booking is configured."""
    config = ctx.lead_config
    if not config.can_offer_booking:
        return json.dumps({"available": False})

    ctx.offered_booking = True
    ctx.actions.append(ShowBooking(booking_link=config.booking_link, cta_text=config.booking_cta_text))
    ctx.client_actions.append(ClientAction(
        type=ClientActionType.SHOW_BOOKING_LINK,
        url=config.booking_link,
        cta_text=config.booking_cta_text,
    ))
    return json.dumps({
        "available": True,
        "booking_url": config.booking_link,
        "cta_text": config.booking_cta_text,
    })


async def _follow_route(ctx: ToolContext, route: StageRoute) -> None:
    ctx.mode = route.mode
    ctx.replies.append(route.response)
    if route.question is not None:
        ctx.client_actions.append(ClientAction(type=ClientActionType.SHOW_QUALIFICATION, question=route.question))
    if route.offer_booking:
        await offer_booking(ctx)
    elif route.mode == ConversationMode.CLOSURE:
        ctx.client_actions.append(ClientAction(type=ClientActionType.CONVERSATION_CLOSED, message=route.response))


async def capture_lead(ctx: ToolContext) -> str:
    """Collect the visitor's email, then name and reason when configured."""
    session = ctx.session
    starting = session.mode != ConversationMode.LEAD_CAPTURE
    if starting and session.lead_id is not None:
        return json.dumps({"success": True, "lead_id": session.lead_id})

    step = ctx.lead_capture_step
    if starting:
        step = first_capture_step()
        ctx.capture_attempts = 0
        if not extract_email(ctx.message):
            ctx.mode = ConversationMode.LEAD_CAPTURE
            ctx.lead_capture_step = step
            ctx.replies.append(prompts.ASK_EMAIL_PROMPT)
            ctx.client_actions.append(
                ClientAction(type=ClientActionType.SHOW_EMAIL_INPUT, prompt=prompts.ASK_EMAIL_PROMPT)
            )
            return json.dumps({"success": False, "requires_input": "email"})

    outcome = process_capture_step(
        step,
        ctx.message,
        ctx.lead_config,
        attempts=ctx.capture_attempts,
        max_retries=ctx.config.session.max_capture_retries,
    )
    if outcome.lead_data is not None:
        ctx.actions.append(CaptureLead(data=outcome.lead_data))

    if outcome.abandoned:
        ctx.mode = ConversationMode.INFO
        ctx.lead_capture_step = None
        ctx.capture_attempts = 0
        ctx.replies.append(outcome.response)
        return json.dumps({"success": False, "abandoned": True})

    if outcome.completed:
        if ctx.lead_config.notify_on_lead:
            ctx.actions.append(SendNotification(notification_type=NotificationType.NEW_LEAD))
        ctx.lead_capture_step = LeadCaptureStep.COMPLETED
        ctx.capture_attempts = 0
        ctx.qualification_step = 0
        await _follow_route(ctx, complete_capture(ctx.lead_config))
        return json.dumps({"success": True, "next_mode": ctx.mode.value})

    ctx.mode = ConversationMode.LEAD_CAPTURE
    ctx.lead_capture_step = outcome.next_step
    ctx.capture_attempts = outcome.attempts
    ctx.replies.append(outcome.response)
    action = _step_action(outcome.next_step, outcome.response)
    if action is not None:
        ctx.client_actions.append(action)
    return json.dumps({
        "success": "partial" if outcome.success else False,
        "requires_input": outcome.next_step.value if outcome.next_step else None,
        "validation_error": outcome.validation_error,
    })


async def ask_qualification(ctx: ToolContext) -> str:
    """Record the answer to the current qualification question and ask the next."""
    outcome = process_qualification_step(ctx.qualification_step, ctx.message, ctx.lead_config)
    if outcome.question_id is not None:
        ctx.actions.append(SaveQualification(question_id=outcome.question_id, answer=outcome.answer or ""))
    ctx.qualification_step = outcome.next_step

    if outcome.route is not None:
        await _follow_route(ctx, outcome.route)
        return json.dumps({"complete": True, "next_mode": ctx.mode.value})

    ctx.mode = ConversationMode.QUALIFICATION
    ctx.replies.append(outcome.response)
    if outcome.next_question is not None:
        ctx.client_actions.append(ClientAction(
            type=ClientActionType.SHOW_QUALIFICATION, question=outcome.next_question,
        ))
    return json.dumps({"complete": False, "question": outcome.response})
