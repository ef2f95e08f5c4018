"""End-to-end tests for the turn handler."""

import asyncio
import time
from typing import Optional

import pytest

from leadflow.config import AppConfig, RolloutConfig
from leadflow.conversation.state_machine import DialogueStateMachine
from leadflow.errors import StorageError, TurnPersistenceError
from leadflow.agents.tool_agent import ToolAgent
from leadflow.orchestrator import TurnHandler, build_turn_handler
from leadflow.rollout.cohorts import CohortAssigner, InMemoryCohortRepository
from leadflow.rollout.metrics import CohortMetricsTracker
from leadflow.rollout.shadow import ShadowComparator
from leadflow.schemas.action_schema import ClientActionType, NotificationType
from leadflow.schemas.rollout_schema import Cohort
from leadflow.schemas.session_schema import (
    BookingStatus,
    ConversationMode,
    LeadBookingStatus,
)
from leadflow.schemas.turn_schema import ExecutionMode, TurnRequest
from leadflow.services.answer_provider import AnswerResult, CatalogAnswerProvider
from leadflow.services.leads import LeadRepository
from leadflow.services.notifications import LoggingNotificationSink, NotificationDispatcher
from leadflow.services.session_store import SessionStore
from tests.conftest import (
    STUB_ANSWER,
    SlowAnswerProvider,
    StubAnswerProvider,
    make_booking_config,
    make_config,
    make_lead_config,
)

AGENT_ROLLOUT = RolloutConfig(use_agent=True, agent_rollout_percentage=100)


class ExplodingAgent:
    async def run_turn(self, session, message, lead_config, instructions=""):
        raise RuntimeError("model unavailable")


class SlowAgent:
    async def run_turn(self, session, message, lead_config, instructions=""):
        await asyncio.sleep(1.0)
        raise AssertionError("should have timed out")


class RecordingAgent:
    """Delegates to a real agent and notes when each run started."""

    def __init__(self, agent) -> None:
        self.agent = agent
        self.started_at: list[float] = []

    async def run_turn(self, session, message, lead_config, instructions=""):
        self.started_at.append(time.perf_counter())
        return await self.agent.run_turn(session, message, lead_config, instructions)


class TimedAnswerProvider:
    """Slow provider that notes when each answer was ready."""

    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.finished_at: list[float] = []

    async def answer(self, chatbot_id, query, instructions, style_hints) -> AnswerResult:
        await asyncio.sleep(self.delay)
        self.finished_at.append(time.perf_counter())
        return AnswerResult(text=STUB_ANSWER)


class FailingSaveStore(SessionStore):
    async def apply_transition(self, session, message, result, now=None):
        raise StorageError("disk full")


def _handler(
    config: AppConfig,
    agent=None,
    store: Optional[SessionStore] = None,
    provider=None,
) -> TurnHandler:
    provider = provider or CatalogAnswerProvider()
    return TurnHandler(
        config=config,
        state_machine=DialogueStateMachine(provider, config),
        store=store or SessionStore(config),
        leads=LeadRepository(),
        cohorts=CohortAssigner(InMemoryCohortRepository(), config.rollout),
        comparator=ShadowComparator(config.comparator),
        metrics=CohortMetricsTracker(),
        dispatcher=NotificationDispatcher([LoggingNotificationSink()], timeout=1.0),
        agent=agent,
    )


def _request(message: str, session_id: str = "visitor-1", chatbot_id: str = "bot-1") -> TurnRequest:
    return TurnRequest(chatbot_id=chatbot_id, session_id=session_id, message=message)


class TestStateMachinePath:
    @pytest.mark.asyncio
    async def test_full_lead_flow(self):
        handler = build_turn_handler(make_config())
        config = make_booking_config()

        first = await handler.handle_turn(_request("What integrations do you support?"), config)
        assert first.mode == ConversationMode.INFO
        assert first.execution_mode == ExecutionMode.STATE_MACHINE
        assert first.sources == ["https://example.com/integrations"]

        second = await handler.handle_turn(_request("How much does the pro plan cost?"), config)
        assert second.mode == ConversationMode.INTENT_CHECK

        third = await handler.handle_turn(_request("Yes, please connect me"), config)
        assert third.mode == ConversationMode.LEAD_CAPTURE
        assert third.client_action.type == ClientActionType.SHOW_EMAIL_INPUT

        fourth = await handler.handle_turn(_request("sure, it's jane@acme.com"), config)
        assert fourth.lead_id is not None
        assert fourth.client_action.type == ClientActionType.SHOW_NAME_INPUT

        fifth = await handler.handle_turn(_request("Jane Doe"), config)
        assert fifth.mode == ConversationMode.BOOKING
        assert fifth.client_action.type == ClientActionType.SHOW_BOOKING_LINK
        assert fifth.client_action.url == (
            "https://calendly.com/acme/30min?name=Jane+Doe&email=jane%40acme.com"
        )

        sixth = await handler.handle_turn(_request("yes, let's book it"), config)
        assert sixth.mode == ConversationMode.CLOSURE
        await handler.close()

        lead = await handler.leads.get_lead(fourth.lead_id)
        assert lead.email == "jane@acme.com"
        assert lead.name == "Jane Doe"
        assert lead.booking_status == LeadBookingStatus.LINK_SHARED
        assert lead.owner_notified
        assert lead.questions_asked[0] == "What integrations do you support?"

        events = [d.event for d in handler.dispatcher.deliveries]
        assert events == [NotificationType.NEW_LEAD, NotificationType.BOOKING_SCHEDULED]

        session = await handler.store.get_session("bot-1", "visitor-1")
        assert session.message_count == 12
        assert session.booking_status == BookingStatus.LINK_SHARED
        record = handler.metrics.get_session(session.id)
        assert record.cohort == Cohort.STATE_MACHINE
        assert record.message_count == 6
        assert record.lead_capture_message_count == 4
        assert record.booking_offered

    @pytest.mark.asyncio
    async def test_high_intent_notification(self):
        handler = build_turn_handler(make_config())
        reply = await handler.handle_turn(_request("Can we book a demo call?"), make_lead_config())
        await handler.close()
        assert reply.intent_level.value == "HIGH_INTENT"
        assert [d.event for d in handler.dispatcher.deliveries] == [NotificationType.HIGH_INTENT_VISITOR]

    @pytest.mark.asyncio
    async def test_same_email_reuses_lead(self):
        handler = build_turn_handler(make_config(min_exchanges=0))
        config = make_lead_config(require_name=False)
        lead_ids = []
        for session_id in ("visitor-1", "visitor-2"):
            await handler.handle_turn(_request("I'd like to book a call", session_id), config)
            reply = await handler.handle_turn(_request("jane@acme.com", session_id), config)
            lead_ids.append(reply.lead_id)
        assert lead_ids[0] == lead_ids[1]

    @pytest.mark.asyncio
    async def test_concurrent_turns_are_serialized(self):
        handler = build_turn_handler(make_config())
        config = make_lead_config()
        await asyncio.gather(*[
            handler.handle_turn(_request(f"question {i}?"), config) for i in range(3)
        ])
        session = await handler.store.get_session("bot-1", "visitor-1")
        assert session.message_count == 6

    @pytest.mark.asyncio
    async def test_persistence_error_keeps_result(self):
        config = make_config()
        handler = _handler(config, store=FailingSaveStore(config))
        with pytest.raises(TurnPersistenceError) as excinfo:
            await handler.handle_turn(_request("What integrations do you support?"), make_lead_config())
        assert excinfo.value.result.response.startswith("We integrate with")


class TestAgentPath:
    @pytest.mark.asyncio
    async def test_agent_serves_full_rollout(self):
        handler = build_turn_handler(make_config(rollout=AGENT_ROLLOUT))
        reply = await handler.handle_turn(_request("What integrations do you support?"), make_lead_config())
        assert reply.execution_mode == ExecutionMode.AGENT
        assert reply.response.startswith("We integrate with")

        session = await handler.store.get_session("bot-1", "visitor-1")
        record = handler.metrics.get_session(session.id)
        assert record.cohort == Cohort.AGENT
        assert record.total_tool_calls == 2

    @pytest.mark.asyncio
    async def test_agent_disabled_without_agent(self):
        handler = build_turn_handler(make_config(rollout=AGENT_ROLLOUT), with_agent=False)
        reply = await handler.handle_turn(_request("hello"), make_lead_config())
        assert reply.execution_mode == ExecutionMode.STATE_MACHINE

    @pytest.mark.asyncio
    async def test_partial_rollout_follows_cohort(self):
        rollout = RolloutConfig(use_agent=True, agent_rollout_percentage=50)
        handler = build_turn_handler(make_config(rollout=rollout))
        await handler.cohorts.assign_cohort("bot-agent", Cohort.AGENT)
        await handler.cohorts.assign_cohort("bot-control", Cohort.STATE_MACHINE)

        agent_reply = await handler.handle_turn(_request("hello", chatbot_id="bot-agent"), make_lead_config())
        control_reply = await handler.handle_turn(_request("hello", chatbot_id="bot-control"), make_lead_config())
        assert agent_reply.execution_mode == ExecutionMode.AGENT
        assert control_reply.execution_mode == ExecutionMode.STATE_MACHINE

    @pytest.mark.asyncio
    async def test_agent_error_falls_back_to_state_machine(self):
        handler = _handler(make_config(rollout=AGENT_ROLLOUT), agent=ExplodingAgent())
        config = make_lead_config()
        await handler.handle_turn(_request("hello"), config)
        reply = await handler.handle_turn(_request("What integrations do you support?"), config)

        assert reply.execution_mode == ExecutionMode.AGENT
        assert reply.response.startswith("We integrate with")
        session = await handler.store.get_session("bot-1", "visitor-1")
        record = handler.metrics.get_session(session.id)
        assert record.agent_errors == 2
        assert record.fallback_used

    @pytest.mark.asyncio
    async def test_first_turn_agent_error_counted(self):
        handler = _handler(make_config(rollout=AGENT_ROLLOUT), agent=ExplodingAgent())
        await handler.handle_turn(_request("What integrations do you support?"), make_lead_config())

        session = await handler.store.get_session("bot-1", "visitor-1")
        record = handler.metrics.get_session(session.id)
        assert record.message_count == 1
        assert record.agent_errors == 1
        assert record.fallback_used
        assert record.cohort == Cohort.AGENT

    @pytest.mark.asyncio
    async def test_agent_timeout_falls_back(self):
        config = make_config(rollout=AGENT_ROLLOUT, agent_timeout=0.05)
        handler = _handler(config, agent=SlowAgent())
        reply = await handler.handle_turn(_request("What integrations do you support?"), make_lead_config())
        assert reply.response.startswith("We integrate with")
        assert reply.mode == ConversationMode.INFO


class TestShadowMode:
    @pytest.mark.asyncio
    async def test_shadow_logs_comparison(self):
        rollout = RolloutConfig(shadow_mode_enabled=True)
        handler = build_turn_handler(make_config(rollout=rollout))
        reply = await handler.handle_turn(_request("What integrations do you support?"), make_lead_config())
        await handler.close()

        assert reply.execution_mode == ExecutionMode.SHADOW
        assert handler.pending_background_tasks == 0
        rows = handler.comparator.log.rows("bot-1")
        assert len(rows) == 1
        assert rows[0].mode_matches
        assert rows[0].decision_alignment_score == 100

        session = await handler.store.get_session("bot-1", "visitor-1")
        assert handler.metrics.get_session(session.id) is None

    @pytest.mark.asyncio
    async def test_shadow_agent_failure_logged(self):
        config = make_config(rollout=RolloutConfig(shadow_mode_enabled=True))
        handler = _handler(config, agent=ExplodingAgent())
        reply = await handler.handle_turn(_request("What integrations do you support?"), make_lead_config())
        await handler.close()

        assert reply.response.startswith("We integrate with")
        rows = handler.comparator.log.rows("bot-1")
        assert len(rows) == 1
        assert "model unavailable" in rows[0].agent_error
        assert rows[0].decision_alignment_score == 0

    @pytest.mark.asyncio
    async def test_shadow_agent_starts_before_state_machine_finishes(self):
        config = make_config(rollout=RolloutConfig(shadow_mode_enabled=True))
        provider = TimedAnswerProvider(delay=0.2)
        agent = RecordingAgent(ToolAgent(StubAnswerProvider(), config))
        handler = _handler(config, agent=agent, provider=provider)

        reply = await handler.handle_turn(_request("What integrations do you support?"), make_lead_config())
        await handler.close()

        assert reply.execution_mode == ExecutionMode.SHADOW
        assert len(agent.started_at) == 1
        assert agent.started_at[0] < provider.finished_at[0]
        assert len(handler.comparator.log.rows("bot-1")) == 1

    @pytest.mark.asyncio
    async def test_shadow_overrides_agent_rollout(self):
        rollout = RolloutConfig(use_agent=True, agent_rollout_percentage=100, shadow_mode_enabled=True)
        handler = build_turn_handler(make_config(rollout=rollout))
        reply = await handler.handle_turn(_request("hello"), make_lead_config())
        await handler.close()
        assert reply.execution_mode == ExecutionMode.SHADOW


class TestSessionEvents:
    @pytest.mark.asyncio
    async def test_booking_click(self):
        handler = build_turn_handler(make_config())
        await handler.handle_turn(_request("hello"), make_lead_config())
        assert await handler.record_booking_click("bot-1", "visitor-1")

        session = await handler.store.get_session("bot-1", "visitor-1")
        assert session.booking_status == BookingStatus.LINK_SHARED
        assert session.booking_link_clicked_at is not None
        assert handler.metrics.get_session(session.id).booking_clicked

    @pytest.mark.asyncio
    async def test_booking_click_unknown_session(self):
        handler = build_turn_handler(make_config())
        assert not await handler.record_booking_click("bot-1", "nobody")

    @pytest.mark.asyncio
    async def test_end_session_starts_fresh(self):
        handler = build_turn_handler(make_config())
        await handler.handle_turn(_request("hello"), make_lead_config())
        first = await handler.store.get_session("bot-1", "visitor-1")

        assert await handler.end_session("bot-1", "visitor-1")
        assert not await handler.record_booking_click("bot-1", "visitor-1")

        await handler.handle_turn(_request("hello again"), make_lead_config())
        second = await handler.store.get_session("bot-1", "visitor-1")
        assert second.id != first.id
        assert second.message_count == 2

    @pytest.mark.asyncio
    async def test_end_session_waits_for_turns_in_flight(self):
        config = make_config()
        handler = _handler(config, provider=SlowAnswerProvider(delay=0.05))
        lead_config = make_lead_config()

        first = asyncio.create_task(handler.handle_turn(_request("What does it cost?"), lead_config))
        await asyncio.sleep(0.01)
        queued = asyncio.create_task(handler.handle_turn(_request("Any discounts?"), lead_config))
        await asyncio.sleep(0)
        ending = asyncio.create_task(handler.end_session("bot-1", "visitor-1"))
        await asyncio.sleep(0)
        late = asyncio.create_task(handler.handle_turn(_request("Do you have a free trial?"), lead_config))

        replies = await asyncio.gather(first, queued, ending, late)
        assert replies[2] is True
        assert [r.session_id for r in (replies[0], replies[1], replies[3])] == ["visitor-1"] * 3

        stats = await handler.store.get_session_stats("bot-1")
        assert stats["total_sessions"] == 2
        assert stats["active_sessions"] == 1

        current = await handler.store.get_session("bot-1", "visitor-1")
        assert current.message_count == 2
        assert current.message_history[0].content == "Do you have a free trial?"
        assert stats["avg_message_count"] == 3.0
        assert await handler.store.get_active_sessions("bot-1") == [current]
        assert handler.store.active_lock_count == 0

    @pytest.mark.asyncio
    async def test_end_unknown_session(self):
        handler = build_turn_handler(make_config())
        assert not await handler.end_session("bot-1", "nobody")
