"""Shared test fixtures and helpers."""

import asyncio
from typing import Mapping, Optional

import pytest

from leadflow.config import AppConfig, RolloutConfig, SessionConfig, TimeoutConfig
from leadflow.conversation.state_machine import DialogueStateMachine
from leadflow.errors import RetrievalError
from leadflow.schemas.session_schema import (
    ConversationMode,
    ConversationSession,
    IntentLevel,
    LeadCaptureConfig,
    QualificationQuestion,
)
from leadflow.services.answer_provider import AnswerResult
from leadflow.services.session_store import SessionStore

STUB_ANSWER = "Our plans start at $49/month."
STUB_SOURCE = "https://example.com/pricing"


class StubAnswerProvider:
    """Always returns the same answer and records every query."""

    def __init__(self, text: str = STUB_ANSWER, sources: Optional[list[str]] = None) -> None:
        self.text = text
        self.sources = [STUB_SOURCE] if sources is None else sources
        self.queries: list[str] = []

    async def answer(
        self,
        chatbot_id: str,
        query: str,
        instructions: str,
        style_hints: Mapping[str, Optional[str]],
    ) -> AnswerResult:
        self.queries.append(query)
        return AnswerResult(text=self.text, sources=list(self.sources))


class FailingAnswerProvider:
    def __init__(self, error: Exception = RuntimeError("vector store unreachable")) -> None:
        self.error = error
        self.calls = 0

    async def answer(self, chatbot_id, query, instructions, style_hints) -> AnswerResult:
        self.calls += 1
        raise self.error


class SlowAnswerProvider:
    def __init__(self, delay: float = 1.0) -> None:
        self.delay = delay

    async def answer(self, chatbot_id, query, instructions, style_hints) -> AnswerResult:
        await asyncio.sleep(self.delay)
        return AnswerResult(text=STUB_ANSWER)


def make_config(
    min_exchanges: int = 2,
    max_capture_retries: int = 3,
    answer_timeout: float = 15.0,
    agent_timeout: float = 15.0,
    rollout: Optional[RolloutConfig] = None,
) -> AppConfig:
    """Helper to create an AppConfig without touching the environment."""
    return AppConfig(
        session=SessionConfig(
            min_exchanges_before_capture=min_exchanges,
            max_capture_retries=max_capture_retries,
        ),
        rollout=rollout or RolloutConfig(),
        timeouts=TimeoutConfig(
            answer_timeout_sec=answer_timeout,
            agent_timeout_sec=agent_timeout,
            notification_timeout_sec=1.0,
        ),
    )


def make_lead_config(**overrides) -> LeadCaptureConfig:
    """Helper to create a LeadCaptureConfig with sensible defaults."""
    values = {
        "lead_capture_trigger": "MEDIUM_INTENT",
        "require_name": True,
    }
    values.update(overrides)
    return LeadCaptureConfig(**values)


def make_booking_config(**overrides) -> LeadCaptureConfig:
    values = {
        "booking_enabled": True,
        "booking_link": "https://calendly.com/acme/30min",
        "booking_cta_text": "Book a call",
    }
    values.update(overrides)
    return make_lead_config(**values)


def make_qualifying_config(**overrides) -> LeadCaptureConfig:
    values = {
        "qualification_enabled": True,
        "qualification_questions": [
            QualificationQuestion(id="team_size", question="How large is your team?", required=True),
            QualificationQuestion(id="timeline", question="When do you want to start?"),
        ],
    }
    values.update(overrides)
    return make_booking_config(**values)


def make_session(
    mode: ConversationMode = ConversationMode.INFO,
    message_count: int = 0,
    intent_level: IntentLevel = IntentLevel.LOW,
    chatbot_id: str = "bot-1",
    session_id: str = "visitor-1",
    **kwargs,
) -> ConversationSession:
    """Helper to create a ConversationSession in a given mode."""
    return ConversationSession(
        chatbot_id=chatbot_id,
        session_id=session_id,
        mode=mode,
        message_count=message_count,
        intent_level=intent_level,
        **kwargs,
    )


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def lead_config():
    return make_lead_config()


@pytest.fixture
def answer_provider():
    return StubAnswerProvider()


@pytest.fixture
def state_machine(answer_provider, config):
    return DialogueStateMachine(answer_provider, config)


@pytest.fixture
def session_store(config):
    return SessionStore(config)
