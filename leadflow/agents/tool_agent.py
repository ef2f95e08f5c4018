"""
Tool-calling agent: the alternative decision path for the rollout.

Where the state machine walks an explicit transition table, the agent
picks tools for each turn and infers the next mode from what they did.
It skips the separate intent-check question: once intent and engagement
are high enough it moves straight into contact capture. Any error inside
the agent degrades to an answer-only reply with ``fallback_used`` set.
"""

import time
from typing import Protocol

from leadflow import prompts
from leadflow.agents.registry import get_tool
from leadflow.agents.tools import ToolContext
from leadflow.config import AppConfig
from leadflow.conversation.state_machine import can_start_capture, classify_booking_reply, is_question
from leadflow.errors import RetrievalError
from leadflow.logging_context import get_turn_logger
from leadflow.schemas.action_schema import (
    ClientAction,
    ClientActionType,
    NotificationType,
    SendNotification,
    StateTransitionResult,
)
from leadflow.schemas.rollout_schema import AgentResponse, ToolCallRecord
from leadflow.schemas.session_schema import (
    BookingStatus,
    ConversationMode,
    ConversationSession,
    LeadCaptureConfig,
)
from leadflow.services.answer_provider import AnswerProvider, answer_with_timeout

logger = get_turn_logger(__name__)


class AgentPath(Protocol):
    """Anything that can take a visitor turn in place of the state machine."""

    async def run_turn(
        self,
        session: ConversationSession,
        message: str,
        lead_config: LeadCaptureConfig,
        instructions: str = "",
    ) -> AgentResponse: ...


class ToolAgent:
    """Deterministic tool-calling agent over the registered tools."""

    def __init__(self, answer_provider: AnswerProvider, config: AppConfig) -> None:
        self._answer_provider = answer_provider
        self._config = config

    async def run_turn(
        self,
        session: ConversationSession,
        message: str,
        lead_config: LeadCaptureConfig,
        instructions: str = "",
    ) -> AgentResponse:
        ctx = ToolContext.for_turn(
            session, message, lead_config, instructions, self._answer_provider, self._config
        )
        tool_calls: list[ToolCallRecord] = []
        try:
            await self._plan(ctx, tool_calls)
        except Exception as exc:
            logger.error("Agent turn failed, using answer-only fallback", exc_info=True)
            return await self._fallback(ctx, tool_calls, exc)

        transition = ctx.transition()
        logger.debug(
            "Agent turn: mode=%s tools=%s",
            transition.next_mode.value, [call.tool_name for call in tool_calls],
        )
        return AgentResponse(
            response=transition.response,
            sources=transition.sources,
            conversation_mode=transition.next_mode,
            intent_level=transition.intent_level,
            actions=ctx.client_actions,
            tool_calls=tool_calls,
            transition=transition,
        )

    async def _call(self, name: str, ctx: ToolContext, tool_calls: list[ToolCallRecord]) -> str:
        tool = get_tool(name)
        started = time.perf_counter()
        tool_input = {"message": ctx.message, "mode": ctx.mode.value}
        try:
            output = await tool(ctx)
        except Exception as exc:
            tool_calls.append(ToolCallRecord(
                tool_name=name,
                tool_input=tool_input,
                output=str(exc),
                duration_ms=(time.perf_counter() - started) * 1000,
                success=False,
            ))
            raise
        tool_calls.append(ToolCallRecord(
            tool_name=name,
            tool_input=tool_input,
            output=output,
            duration_ms=(time.perf_counter() - started) * 1000,
        ))
        return output

    async def _plan(self, ctx: ToolContext, tool_calls: list[ToolCallRecord]) -> None:
        """Choose and run the tools for this turn, leaving the outcome on ``ctx``."""
        await self._call("analyze_intent", ctx, tool_calls)

        if ctx.mode == ConversationMode.LEAD_CAPTURE:
            await self._call("capture_lead", ctx, tool_calls)
            return
        if ctx.mode == ConversationMode.QUALIFICATION:
            await self._call("ask_qualification", ctx, tool_calls)
            return
        if ctx.mode == ConversationMode.BOOKING:
            await self._booking(ctx, tool_calls)
            return
        if ctx.mode == ConversationMode.CLOSURE and not is_question(ctx.message):
            ctx.replies.append(prompts.CLOSURE_ACK)
            return

        await self._call("answer_question", ctx, tool_calls)
        if ctx.retrieval_failed:
            return
        ctx.mode = ConversationMode.INFO

        min_exchanges = self._config.session.min_exchanges_before_capture
        if can_start_capture(ctx.session, ctx.intent_level, ctx.lead_config, min_exchanges):
            await self._call("capture_lead", ctx, tool_calls)

    async def _booking(self, ctx: ToolContext, tool_calls: list[ToolCallRecord]) -> None:
        config = ctx.lead_config
        reply = classify_booking_reply(ctx.message)

        if reply is False:
            closing = config.closure_message or prompts.CLOSURE_DEFAULT
            ctx.mode = ConversationMode.CLOSURE
            ctx.booking_status = BookingStatus.DECLINED
            ctx.replies.append(closing)
            ctx.client_actions.append(ClientAction(type=ClientActionType.CONVERSATION_CLOSED, message=closing))
            return

        await self._call("offer_booking", ctx, tool_calls)
        if reply is None:
            ctx.replies.append(prompts.BOOKING_OFFER)
            return

        ctx.mode = ConversationMode.CLOSURE
        ctx.booking_status = BookingStatus.LINK_SHARED
        ctx.replies.append(config.booking_confirmation_message or prompts.BOOKING_ACCEPTED_DEFAULT)
        if config.notify_on_booking:
            ctx.actions.append(SendNotification(notification_type=NotificationType.BOOKING_SCHEDULED))

    async def _fallback(
        self, ctx: ToolContext, tool_calls: list[ToolCallRecord], error: Exception
    ) -> AgentResponse:
        """Answer the question directly, keeping the session's mode."""
        session = ctx.session
        retrieval_failed = False
        try:
            answer = await answer_with_timeout(
                self._answer_provider,
                session.chatbot_id,
                ctx.message,
                prompts.build_answer_instructions(ctx.instructions),
                ctx.lead_config.style_hints(),
                timeout=self._config.timeouts.answer_timeout_sec,
            )
            text, sources = answer.text, answer.sources
        except RetrievalError as exc:
            logger.error("Agent fallback also failed: %s", exc)
            text, sources = prompts.RETRIEVAL_APOLOGY, []
            retrieval_failed = True

        transition = StateTransitionResult(
            next_mode=session.mode,
            response=text,
            intent_level=session.intent_level,
            lead_capture_step=session.lead_capture_step,
            capture_attempts=session.capture_attempts,
            qualification_step=session.qualification_step,
            sources=sources,
            retrieval_failed=retrieval_failed,
        )
        return AgentResponse(
            response=text,
            sources=sources,
            conversation_mode=session.mode,
            intent_level=session.intent_level,
            tool_calls=tool_calls,
            agent_used=False,
            fallback_used=True,
            error=str(error) or type(error).__name__,
            transition=transition,
        )
