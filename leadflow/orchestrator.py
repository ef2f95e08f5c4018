"""
Turn handler: one visitor message in, one reply out.

Per turn, under the session key's lock:
    1. load or create the session (expired sessions are replaced)
    2. pick the execution mode: shadow, agent cohort, or state machine
    3. run the decision path and apply its result in a single write
    4. create or update the lead from CAPTURE_LEAD actions
    5. dispatch owner notifications in the background
    6. record cohort metrics (not for shadowed turns)

In shadow mode the state machine's reply is the one the visitor sees; the
agent starts alongside it as a background task and only its comparison row
is kept.

Usage:
    handler = TurnHandler(config, state_machine, store, leads, cohorts,
                          comparator, metrics, dispatcher, agent=agent)
    reply = await handler.handle_turn(TurnRequest(...), lead_config)
    await handler.close()
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Optional, Sequence, Union

from leadflow.agents.tool_agent import AgentPath, ToolAgent
from leadflow.config import AppConfig
from leadflow.conversation.state_machine import DialogueStateMachine, get_client_action
from leadflow.errors import ComparisonError, StorageError, TurnPersistenceError
from leadflow.logging_context import get_turn_logger, make_turn_id, set_turn_id
from leadflow.rollout.cohorts import CohortAssigner, InMemoryCohortRepository
from leadflow.rollout.flags import is_partial_rollout, should_use_agent, should_use_shadow_mode
from leadflow.rollout.metrics import CohortMetricsTracker
from leadflow.rollout.shadow import ShadowComparator
from leadflow.schemas.action_schema import (
    CaptureLead,
    ClientAction,
    ClientActionType,
    NotificationType,
    SaveQualification,
    SendNotification,
    ShowBooking,
    StateTransitionResult,
)
from leadflow.schemas.rollout_schema import AgentResponse, Cohort
from leadflow.schemas.session_schema import (
    BookingStatus,
    ConversationSession,
    Lead,
    LeadBookingStatus,
    LeadCaptureConfig,
    LeadData,
    SessionContext,
    utcnow,
)
from leadflow.schemas.turn_schema import ExecutionMode, TurnRequest, TurnResponse
from leadflow.services.answer_provider import AnswerProvider, CatalogAnswerProvider
from leadflow.services.booking_link import build_booking_link
from leadflow.services.leads import LeadRepository, generate_conversation_summary
from leadflow.services.notifications import (
    LoggingNotificationSink,
    NotificationDispatcher,
    NotificationSink,
    build_payload,
)
from leadflow.services.session_store import SessionStore

logger = get_turn_logger(__name__)

_LEAD_BOOKING_STATUS = {
    BookingStatus.LINK_SHARED: LeadBookingStatus.LINK_SHARED,
    BookingStatus.COMPLETED: LeadBookingStatus.BOOKED,
    BookingStatus.DECLINED: LeadBookingStatus.DECLINED,
}


@dataclass
class _Decision:
    result: StateTransitionResult
    cohort: Cohort
    tool_calls: int = 0
    had_error: bool = False
    used_fallback: bool = False


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


class TurnHandler:
    """Runs visitor turns end to end against the injected collaborators."""

    def __init__(
        self,
        config: AppConfig,
        state_machine: DialogueStateMachine,
        store: SessionStore,
        leads: LeadRepository,
        cohorts: CohortAssigner,
        comparator: ShadowComparator,
        metrics: CohortMetricsTracker,
        dispatcher: NotificationDispatcher,
        agent: Optional[AgentPath] = None,
    ) -> None:
        self._config = config
        self._state_machine = state_machine
        self._store = store
        self._leads = leads
        self._cohorts = cohorts
        self._comparator = comparator
        self._metrics = metrics
        self._dispatcher = dispatcher
        self._agent = agent
        self._background: set[asyncio.Task] = set()

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def leads(self) -> LeadRepository:
        return self._leads

    @property
    def cohorts(self) -> CohortAssigner:
        return self._cohorts

    @property
    def comparator(self) -> ShadowComparator:
        return self._comparator

    @property
    def metrics(self) -> CohortMetricsTracker:
        return self._metrics

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    @property
    def pending_background_tasks(self) -> int:
        return len(self._background)

    async def handle_turn(
        self,
        request: TurnRequest,
        lead_config: LeadCaptureConfig,
        instructions: str = "",
    ) -> TurnResponse:
        """
        Process one visitor message.

        Raises:
            TurnPersistenceError: If the turn could not be saved. The computed
                result is attached so only the save needs retrying.
            StorageError: If the lead could not be written.
        """
        set_turn_id(make_turn_id(request.chatbot_id, request.session_id))
        context = SessionContext(
            page_url=request.page_url,
            referrer_url=request.referrer_url,
            user_agent=request.user_agent,
        )

        async with self._store.lock(request.chatbot_id, request.session_id):
            session = await self._store.get_or_create_session(
                request.chatbot_id, request.session_id, context
            )
            execution = await self._choose_execution_mode(request.chatbot_id)
            logger.debug("Turn in %s mode (session mode %s)", execution.value, session.mode.value)

            started = time.perf_counter()
            decision = await self._decide(execution, session, request.message, lead_config, instructions)
            elapsed = _elapsed_ms(started)
            result = decision.result

            try:
                saved = await self._store.apply_transition(session, request.message, result)
            except StorageError as exc:
                raise TurnPersistenceError(
                    f"Failed to save turn for session {session.id}: {exc}", result=result
                ) from exc

            saved, lead, lead_created = await self._apply_lead_actions(saved, result)
            if lead is not None and result.booking_status in _LEAD_BOOKING_STATUS:
                lead = await self._leads.update_booking_status(
                    lead.id, _LEAD_BOOKING_STATUS[result.booking_status]
                )
            await self._dispatch_notifications(saved, lead, result)

            if execution != ExecutionMode.SHADOW:
                self._record_metrics(session, saved, decision, elapsed, lead_created)

        return TurnResponse(
            response=result.response,
            mode=saved.mode,
            intent_level=saved.intent_level,
            client_action=self._client_action(result, lead_config, lead),
            session_id=saved.session_id,
            sources=result.sources,
            lead_id=saved.lead_id,
            execution_mode=execution,
        )

    async def record_booking_click(self, chatbot_id: str, session_id: str) -> bool:
        """Note that the visitor opened the booking link. False if no open session."""
        set_turn_id(make_turn_id(chatbot_id, session_id))
        async with self._store.lock(chatbot_id, session_id):
            session = await self._store.get_session(chatbot_id, session_id)
            if session is None or session.is_closed:
                return False
            await self._store.update_booking_status(
                session, BookingStatus.LINK_SHARED, clicked_at=utcnow()
            )
            if session.lead_id is not None:
                await self._leads.update_booking_status(session.lead_id, LeadBookingStatus.LINK_SHARED)
            self._metrics.mark_booking_clicked(session.id)
        logger.info("Booking link clicked")
        return True

    async def end_session(self, chatbot_id: str, session_id: str) -> bool:
        """Close the open session. Waits for any turn in flight on the same key."""
        set_turn_id(make_turn_id(chatbot_id, session_id))
        async with self._store.lock(chatbot_id, session_id):
            closed = await self._store.close_session(chatbot_id, session_id)
        return closed is not None

    async def close(self) -> None:
        """Wait for shadow runs and notification deliveries to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self._dispatcher.drain()

    # ------------------------------------------------------------------
    # Decision paths
    # ------------------------------------------------------------------

    async def _choose_execution_mode(self, chatbot_id: str) -> ExecutionMode:
        if self._agent is None:
            return ExecutionMode.STATE_MACHINE
        rollout = self._config.rollout
        if should_use_shadow_mode(chatbot_id, rollout):
            return ExecutionMode.SHADOW
        if should_use_agent(rollout):
            if not is_partial_rollout(rollout) or await self._cohorts.is_in_agent_cohort(chatbot_id):
                return ExecutionMode.AGENT
        return ExecutionMode.STATE_MACHINE

    async def _decide(
        self,
        execution: ExecutionMode,
        session: ConversationSession,
        message: str,
        lead_config: LeadCaptureConfig,
        instructions: str,
    ) -> _Decision:
        if execution == ExecutionMode.AGENT:
            return await self._run_agent(session, message, lead_config, instructions)

        shadow: Optional[asyncio.Task] = None
        if execution == ExecutionMode.SHADOW:
            shadow = self._spawn(self._run_shadow_agent(
                session.model_copy(deep=True), message, lead_config, instructions
            ))

        started = time.perf_counter()
        try:
            result = await self._state_machine.process_message(session, message, lead_config, instructions)
        except BaseException:
            if shadow is not None:
                shadow.cancel()
            raise
        if shadow is not None:
            self._spawn(self._log_shadow(session, message, result, _elapsed_ms(started), shadow))
        return _Decision(result=result, cohort=Cohort.STATE_MACHINE)

    def _agent_turn(
        self,
        session: ConversationSession,
        message: str,
        lead_config: LeadCaptureConfig,
        instructions: str,
    ) -> Awaitable[AgentResponse]:
        return asyncio.wait_for(
            self._agent.run_turn(session, message, lead_config, instructions),
            timeout=self._config.timeouts.agent_timeout_sec,
        )

    async def _run_agent(
        self,
        session: ConversationSession,
        message: str,
        lead_config: LeadCaptureConfig,
        instructions: str,
    ) -> _Decision:
        try:
            agent = await self._agent_turn(session, message, lead_config, instructions)
        except Exception:
            logger.error("Agent path failed, falling back to the state machine", exc_info=True)
            result = await self._state_machine.process_message(session, message, lead_config, instructions)
            return _Decision(result=result, cohort=Cohort.AGENT, had_error=True, used_fallback=True)

        return _Decision(
            result=agent.transition or _transition_from_agent(session, agent),
            cohort=Cohort.AGENT,
            tool_calls=agent.tool_calls_count,
            had_error=agent.error is not None,
            used_fallback=agent.fallback_used,
        )

    async def _run_shadow_agent(
        self,
        session: ConversationSession,
        message: str,
        lead_config: LeadCaptureConfig,
        instructions: str,
    ) -> tuple[Union[AgentResponse, Exception], float]:
        started = time.perf_counter()
        try:
            agent = await self._agent_turn(session, message, lead_config, instructions)
        except Exception as exc:
            return exc, _elapsed_ms(started)
        return agent, _elapsed_ms(started)

    async def _log_shadow(
        self,
        session: ConversationSession,
        message: str,
        state_machine: StateTransitionResult,
        state_machine_ms: float,
        shadow: "asyncio.Task[tuple[Union[AgentResponse, Exception], float]]",
    ) -> None:
        agent, agent_ms = await shadow
        if isinstance(agent, Exception):
            error = ComparisonError(f"{type(agent).__name__}: {agent}")
            self._comparator.log_agent_failure(
                session.chatbot_id, session.session_id, message,
                state_machine, state_machine_ms, error, agent_ms,
            )
            return
        self._comparator.log_comparison(
            session.chatbot_id, session.session_id, message,
            state_machine, state_machine_ms, agent, agent_ms,
        )

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    async def _apply_lead_actions(
        self, session: ConversationSession, result: StateTransitionResult
    ) -> tuple[ConversationSession, Optional[Lead], bool]:
        """Create the lead on the email step, then fill it in on later steps."""
        lead = await self._leads.get_lead(session.lead_id) if session.lead_id else None
        created = False

        for action in result.actions_of(CaptureLead):
            if lead is None:
                if not action.data.email:
                    logger.warning("Capture data without an email before any lead exists, skipping")
                    continue
                lead = await self._leads.create_lead(_new_lead(session, action.data))
                session = await self._store.set_lead_id(session, lead.id)
                created = True
            else:
                lead = await self._leads.update_lead(lead.id, {
                    "name": action.data.name,
                    "reason_for_interest": action.data.reason_for_interest,
                })

        if lead is not None and (result.actions_of(CaptureLead) or result.actions_of(SaveQualification)):
            questions = _visitor_messages(session)
            lead = await self._leads.update_lead(lead.id, {
                "intent_level": session.intent_level,
                "qualification_answers": dict(session.qualification_answers) or None,
                "questions_asked": questions,
                "message_count": session.message_count,
                "conversation_summary": generate_conversation_summary(
                    questions, session.intent_level, session.qualification_answers
                ),
            })
        return session, lead, created

    async def _dispatch_notifications(
        self, session: ConversationSession, lead: Optional[Lead], result: StateTransitionResult
    ) -> None:
        for action in result.actions_of(SendNotification):
            event = action.notification_type
            self._dispatcher.dispatch(event, build_payload(session.chatbot_id, lead, session))
            logger.info("Notification %s dispatched", event.value)
            if event == NotificationType.NEW_LEAD and lead is not None:
                await self._leads.mark_as_notified(lead.id)

    def _record_metrics(
        self,
        before: ConversationSession,
        after: ConversationSession,
        decision: _Decision,
        elapsed_ms: float,
        lead_created: bool,
    ) -> None:
        if before.message_count == 0:
            self._metrics.initialize_session(
                after.chatbot_id,
                after.id,
                decision.cohort,
                elapsed_ms,
                tool_calls=decision.tool_calls,
                had_error=decision.had_error,
                used_fallback=decision.used_fallback,
            )
            return
        result = decision.result
        self._metrics.update_session(
            after.id,
            response_time_ms=elapsed_ms,
            tool_calls=decision.tool_calls,
            had_error=decision.had_error,
            used_fallback=decision.used_fallback,
            lead_captured=lead_created,
            booking_offered=result.should_offer_booking or bool(result.actions_of(ShowBooking)),
        )

    def _client_action(
        self, result: StateTransitionResult, lead_config: LeadCaptureConfig, lead: Optional[Lead]
    ) -> ClientAction:
        action = get_client_action(result, lead_config)
        if action.type == ClientActionType.SHOW_BOOKING_LINK and action.url:
            action = action.model_copy(update={"url": build_booking_link(action.url, lead)})
        return action


def _visitor_messages(session: ConversationSession) -> list[str]:
    return [m.content for m in session.message_history if m.role == "user"]


def _new_lead(session: ConversationSession, data: LeadData) -> Lead:
    questions = _visitor_messages(session)
    return Lead(
        chatbot_id=session.chatbot_id,
        email=data.email,
        name=data.name,
        reason_for_interest=data.reason_for_interest,
        page_url=session.page_url,
        referrer_url=session.referrer_url,
        intent_level=session.intent_level,
        qualification_answers=dict(session.qualification_answers),
        questions_asked=questions,
        message_count=session.message_count,
        conversation_summary=generate_conversation_summary(
            questions, session.intent_level, session.qualification_answers
        ),
        source_session_id=session.id,
    )


def _transition_from_agent(session: ConversationSession, agent: AgentResponse) -> StateTransitionResult:
    """Minimal result for an agent that reports no session changes of its own."""
    return StateTransitionResult(
        next_mode=agent.conversation_mode,
        response=agent.response,
        intent_level=agent.intent_level or session.intent_level,
        lead_capture_step=session.lead_capture_step,
        capture_attempts=session.capture_attempts,
        qualification_step=session.qualification_step,
        sources=agent.sources,
    )


def build_turn_handler(
    config: AppConfig,
    answer_provider: Optional[AnswerProvider] = None,
    sinks: Optional[Sequence[NotificationSink]] = None,
    with_agent: bool = True,
) -> TurnHandler:
    """Wire a TurnHandler over the in-memory stores and the FAQ catalog provider."""
    provider = answer_provider if answer_provider is not None else CatalogAnswerProvider()
    return TurnHandler(
        config=config,
        state_machine=DialogueStateMachine(provider, config),
        store=SessionStore(config),
        leads=LeadRepository(),
        cohorts=CohortAssigner(InMemoryCohortRepository(), config.rollout),
        comparator=ShadowComparator(config.comparator),
        metrics=CohortMetricsTracker(),
        dispatcher=NotificationDispatcher(
            sinks if sinks is not None else [LoggingNotificationSink()],
            timeout=config.timeouts.notification_timeout_sec,
        ),
        agent=ToolAgent(provider, config) if with_agent else None,
    )
