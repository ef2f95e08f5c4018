"""
Per-cohort conversation metrics for the agent rollout.

One record per visitor session, updated every turn. Aggregates compare the
agent cohort with the state machine cohort on latency, conversion (lead
capture, booking offers and clicks), reliability (errors, fallbacks) and
estimated model cost. Tracking must never break a turn, so every write
logs and swallows its errors.
"""

import logging
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from typing import Optional

from leadflow.schemas.rollout_schema import Cohort
from leadflow.schemas.session_schema import utcnow

logger = logging.getLogger(__name__)

# Token and price assumptions for cost estimation (USD per 1K tokens)
EMBEDDING_TOKENS = 200
EMBEDDING_PRICE = 0.0001
INPUT_TOKENS = 500
INPUT_PRICE = 0.00015
OUTPUT_TOKENS = 200
OUTPUT_PRICE = 0.0006
TOOL_CONTEXT_TOKENS = 300
AGENT_REASONING_MULTIPLIER = 2


def estimate_cost(cohort: Cohort, messages: int = 1, tool_calls: int = 0) -> float:
    """Rough model cost of ``messages`` turns on the given path."""
    base = (
        EMBEDDING_TOKENS / 1000 * EMBEDDING_PRICE
        + INPUT_TOKENS / 1000 * INPUT_PRICE
        + OUTPUT_TOKENS / 1000 * OUTPUT_PRICE
    )
    if cohort == Cohort.STATE_MACHINE:
        return messages * base
    tool_cost = tool_calls * (TOOL_CONTEXT_TOKENS / 1000 * INPUT_PRICE)
    return messages * (base * AGENT_REASONING_MULTIPLIER + tool_cost)


@dataclass
class SessionMetrics:
    """Running totals for one visitor session."""

    chatbot_id: str
    session_id: str
    cohort: Cohort
    message_count: int = 0
    total_response_time_ms: float = 0.0
    total_tool_calls: int = 0
    agent_errors: int = 0
    fallback_used: bool = False
    lead_captured: bool = False
    lead_capture_time_seconds: Optional[float] = None
    lead_capture_message_count: Optional[int] = None
    booking_offered: bool = False
    booking_clicked: bool = False
    estimated_cost_usd: float = 0.0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def avg_response_time_ms(self) -> float:
        return self.total_response_time_ms / self.message_count if self.message_count else 0.0


@dataclass
class CohortMetrics:
    """Aggregated metrics for one cohort."""

    cohort: Cohort
    total_conversations: int = 0
    total_messages: int = 0
    avg_response_time_ms: float = 0.0
    lead_capture_rate: float = 0.0
    booking_offer_rate: float = 0.0
    booking_click_rate: float = 0.0
    avg_messages_to_lead: float = 0.0
    avg_time_to_lead_seconds: float = 0.0
    error_rate: float = 0.0
    fallback_rate: float = 0.0
    avg_tool_calls: float = 0.0
    total_cost_usd: float = 0.0
    avg_cost_per_conversation_usd: float = 0.0


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _rate(records: list[SessionMetrics], attr: str) -> float:
    return _mean([1.0 if getattr(r, attr) else 0.0 for r in records]) * 100


class CohortMetricsTracker:
    """In-memory session metrics keyed by session id."""

    def __init__(self) -> None:
        self._records: dict[str, SessionMetrics] = {}

    def get_session(self, session_id: str) -> Optional[SessionMetrics]:
        return self._records.get(session_id)

    def initialize_session(
        self,
        chatbot_id: str,
        session_id: str,
        cohort: Cohort,
        response_time_ms: float,
        tool_calls: int = 0,
        had_error: bool = False,
        used_fallback: bool = False,
    ) -> None:
        """Start tracking a session with its first turn. A second call is a no-op."""
        try:
            if session_id in self._records:
                return
            self._records[session_id] = SessionMetrics(
                chatbot_id=chatbot_id,
                session_id=session_id,
                cohort=cohort,
                message_count=1,
                total_response_time_ms=response_time_ms,
                total_tool_calls=tool_calls,
                agent_errors=1 if had_error else 0,
                fallback_used=used_fallback,
                estimated_cost_usd=estimate_cost(cohort, 1, tool_calls),
            )
        except Exception:
            logger.error("Failed to initialize metrics for session %s", session_id, exc_info=True)

    def update_session(
        self,
        session_id: str,
        response_time_ms: float,
        tool_calls: int = 0,
        had_error: bool = False,
        used_fallback: bool = False,
        lead_captured: bool = False,
        booking_offered: bool = False,
        booking_clicked: bool = False,
        now: Optional[datetime] = None,
    ) -> None:
        """Fold one more turn into the session's totals. Flags only ever turn on."""
        try:
            record = self._records.get(session_id)
            if record is None:
                logger.warning("No metrics found for session %s", session_id)
                return

            now = now or utcnow()
            record.message_count += 1
            record.total_response_time_ms += response_time_ms
            record.total_tool_calls += tool_calls
            record.agent_errors += 1 if had_error else 0
            record.fallback_used = record.fallback_used or used_fallback
            if lead_captured and not record.lead_captured:
                record.lead_captured = True
                record.lead_capture_time_seconds = round((now - record.created_at).total_seconds())
                record.lead_capture_message_count = record.message_count
            record.booking_offered = record.booking_offered or booking_offered
            record.booking_clicked = record.booking_clicked or booking_clicked
            record.estimated_cost_usd += estimate_cost(record.cohort, 1, tool_calls)
            record.updated_at = now
        except Exception:
            logger.error("Failed to update metrics for session %s", session_id, exc_info=True)

    def mark_booking_clicked(self, session_id: str) -> None:
        record = self._records.get(session_id)
        if record is None:
            logger.warning("No metrics found for session %s", session_id)
            return
        record.booking_clicked = True
        record.updated_at = utcnow()

    def _aggregate(self, cohort: Cohort, records: list[SessionMetrics]) -> Optional[CohortMetrics]:
        rows = [r for r in records if r.cohort == cohort]
        if not rows:
            return None
        to_lead = [r for r in rows if r.lead_capture_message_count is not None]
        total_cost = sum(r.estimated_cost_usd for r in rows)
        return CohortMetrics(
            cohort=cohort,
            total_conversations=len(rows),
            total_messages=sum(r.message_count for r in rows),
            avg_response_time_ms=round(_mean([r.avg_response_time_ms for r in rows])),
            lead_capture_rate=_rate(rows, "lead_captured"),
            booking_offer_rate=_rate(rows, "booking_offered"),
            booking_click_rate=_rate(rows, "booking_clicked"),
            avg_messages_to_lead=_mean([r.lead_capture_message_count for r in to_lead]),
            avg_time_to_lead_seconds=_mean([r.lead_capture_time_seconds or 0.0 for r in to_lead]),
            error_rate=_mean([1.0 if r.agent_errors else 0.0 for r in rows]) * 100,
            fallback_rate=_rate(rows, "fallback_used"),
            avg_tool_calls=_mean([r.total_tool_calls / r.message_count for r in rows if r.message_count]),
            total_cost_usd=total_cost,
            avg_cost_per_conversation_usd=total_cost / len(rows),
        )

    def _window(self, chatbot_id: Optional[str], days_back: int) -> list[SessionMetrics]:
        since = utcnow() - timedelta(days=days_back)
        return [
            r for r in self._records.values()
            if r.created_at >= since and (chatbot_id is None or r.chatbot_id == chatbot_id)
        ]

    def get_comparative_metrics(
        self, chatbot_id: str, days_back: int = 7
    ) -> dict[Cohort, Optional[CohortMetrics]]:
        records = self._window(chatbot_id, days_back)
        return {cohort: self._aggregate(cohort, records) for cohort in Cohort}

    def get_global_metrics(self, days_back: int = 7) -> dict[Cohort, Optional[CohortMetrics]]:
        records = self._window(None, days_back)
        return {cohort: self._aggregate(cohort, records) for cohort in Cohort}

    def format_report(self, metrics: dict[Cohort, Optional[CohortMetrics]]) -> str:
        """Side-by-side text report of both cohorts."""
        agent = metrics.get(Cohort.AGENT) or CohortMetrics(cohort=Cohort.AGENT)
        control = metrics.get(Cohort.STATE_MACHINE) or CohortMetrics(cohort=Cohort.STATE_MACHINE)

        lines = [
            "=" * 60,
            "AGENT ROLLOUT COHORT REPORT",
            "=" * 60,
            f"  {'metric':<32}{'agent':>12}{'state_machine':>16}",
        ]
        for f in fields(CohortMetrics):
            if f.name == "cohort":
                continue
            a, s = getattr(agent, f.name), getattr(control, f.name)
            if f.name.endswith("_rate"):
                lines.append(f"  {f.name:<32}{a / 100:>12.1%}{s / 100:>16.1%}")
            elif f.name.endswith("_usd"):
                lines.append(f"  {f.name:<32}{a:>12.5f}{s:>16.5f}")
            elif isinstance(a, int) and isinstance(s, int):
                lines.append(f"  {f.name:<32}{a:>12d}{s:>16d}")
            else:
                lines.append(f"  {f.name:<32}{a:>12.1f}{s:>16.1f}")
        lines.append("=" * 60)
        return "\n".join(lines)
