"""
Shadow-mode comparison of the state machine and agent decision paths.

For every shadowed turn both paths' outputs are scored and written to an
append-only log:

    alignment = mode_weight * mode_matches
              + intent_weight * intent_matches
              + similarity_weight * jaccard(response words)

Agent failures are logged as rows with zero similarity and no mode match
so they show up in the aggregate numbers. Nothing here may raise into the
visitor's turn: every public write swallows and logs its errors.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Optional

from leadflow.config import ComparatorConfig
from leadflow.logging_context import get_turn_logger
from leadflow.schemas.action_schema import StateTransitionResult
from leadflow.schemas.rollout_schema import AgentResponse, ComparisonStats, ShadowComparison
from leadflow.schemas.session_schema import ConversationMode, IntentLevel

logger = get_turn_logger(__name__)

# State machine mode -> agent modes accepted as the same decision.
# The agent folds the intent check into ordinary conversation.
MODE_EQUIVALENCE: dict[ConversationMode, frozenset[ConversationMode]] = {
    ConversationMode.INFO: frozenset({ConversationMode.INFO, ConversationMode.INTENT_CHECK}),
    ConversationMode.INTENT_CHECK: frozenset({ConversationMode.INTENT_CHECK, ConversationMode.INFO}),
    ConversationMode.LEAD_CAPTURE: frozenset({ConversationMode.LEAD_CAPTURE}),
    ConversationMode.QUALIFICATION: frozenset({ConversationMode.QUALIFICATION}),
    ConversationMode.BOOKING: frozenset({ConversationMode.BOOKING}),
    ConversationMode.CLOSURE: frozenset({ConversationMode.CLOSURE}),
}


def modes_match(state_machine_mode: ConversationMode, agent_mode: Optional[ConversationMode]) -> bool:
    if agent_mode is None:
        return False
    if state_machine_mode == agent_mode:
        return True
    return agent_mode in MODE_EQUIVALENCE.get(state_machine_mode, frozenset())


def intents_match(state_machine_level: Optional[IntentLevel], agent_level: Optional[IntentLevel]) -> bool:
    """Only comparable when both sides expose a level."""
    if state_machine_level is None or agent_level is None:
        return True
    return state_machine_level == agent_level


def response_similarity(first: str, second: str) -> float:
    """Jaccard similarity of the lower-cased whitespace-separated word sets."""
    words1 = set(first.lower().split())
    words2 = set(second.lower().split())
    union = words1 | words2
    if not union:
        return 0.0
    return len(words1 & words2) / len(union)


@dataclass
class ComparisonMetrics:
    response_similarity: float
    mode_matches: bool
    intent_matches: bool
    decision_alignment_score: int


def compare_results(
    state_machine: StateTransitionResult,
    agent: AgentResponse,
    weights: ComparatorConfig = ComparatorConfig(),
) -> ComparisonMetrics:
    mode_ok = modes_match(state_machine.next_mode, agent.conversation_mode)
    intent_ok = intents_match(state_machine.intent_level, agent.intent_level)
    similarity = response_similarity(state_machine.response, agent.response)
    alignment = round(
        (weights.mode_weight if mode_ok else 0)
        + (weights.intent_weight if intent_ok else 0)
        + similarity * weights.similarity_weight
    )
    return ComparisonMetrics(
        response_similarity=similarity,
        mode_matches=mode_ok,
        intent_matches=intent_ok,
        decision_alignment_score=alignment,
    )


class ComparisonLog:
    """Append-only store of comparison rows."""

    def __init__(self) -> None:
        self._rows: list[ShadowComparison] = []

    def append(self, row: ShadowComparison) -> None:
        self._rows.append(row)

    def rows(self, chatbot_id: Optional[str] = None) -> list[ShadowComparison]:
        return [r for r in self._rows if chatbot_id is None or r.chatbot_id == chatbot_id]

    def __len__(self) -> int:
        return len(self._rows)


class ShadowComparator:
    """Scores shadowed turns and aggregates the results."""

    def __init__(self, config: ComparatorConfig, log: Optional[ComparisonLog] = None) -> None:
        self._config = config
        self.log = log if log is not None else ComparisonLog()

    def log_comparison(
        self,
        chatbot_id: str,
        session_id: str,
        user_message: str,
        state_machine: StateTransitionResult,
        state_machine_time_ms: float,
        agent: AgentResponse,
        agent_time_ms: float,
    ) -> Optional[ShadowComparison]:
        """Score both results and append a row. Returns None if logging failed."""
        try:
            metrics = compare_results(state_machine, agent, self._config)
            row = ShadowComparison(
                chatbot_id=chatbot_id,
                session_id=session_id,
                user_message=user_message,
                state_machine_response=state_machine.response,
                state_machine_mode=state_machine.next_mode,
                state_machine_intent_level=state_machine.intent_level,
                state_machine_execution_time_ms=state_machine_time_ms,
                agent_response=agent.response,
                agent_mode=agent.conversation_mode,
                agent_intent_level=agent.intent_level,
                agent_tool_calls=[call.tool_name for call in agent.tool_calls],
                agent_execution_time_ms=agent_time_ms,
                agent_fallback_used=agent.fallback_used,
                agent_error=agent.error,
                response_similarity=metrics.response_similarity,
                mode_matches=metrics.mode_matches,
                intent_matches=metrics.intent_matches,
                decision_alignment_score=metrics.decision_alignment_score,
            )
            self.log.append(row)
        except Exception:
            logger.error("Failed to log shadow comparison for chatbot %s", chatbot_id, exc_info=True)
            return None

        logger.info(
            "Shadow comparison: mode_match=%s intent_match=%s alignment=%d%%",
            row.mode_matches, row.intent_matches, row.decision_alignment_score,
        )
        return row

    def log_agent_failure(
        self,
        chatbot_id: str,
        session_id: str,
        user_message: str,
        state_machine: StateTransitionResult,
        state_machine_time_ms: float,
        error: BaseException,
        agent_time_ms: float = 0.0,
    ) -> Optional[ShadowComparison]:
        """Record a failed agent run as a zero-similarity, mode-mismatch row."""
        try:
            row = ShadowComparison(
                chatbot_id=chatbot_id,
                session_id=session_id,
                user_message=user_message,
                state_machine_response=state_machine.response,
                state_machine_mode=state_machine.next_mode,
                state_machine_intent_level=state_machine.intent_level,
                state_machine_execution_time_ms=state_machine_time_ms,
                agent_execution_time_ms=agent_time_ms,
                agent_error=str(error) or type(error).__name__,
                response_similarity=0.0,
                mode_matches=False,
                intent_matches=False,
                decision_alignment_score=0,
            )
            self.log.append(row)
        except Exception:
            logger.error("Failed to log agent failure for chatbot %s", chatbot_id, exc_info=True)
            return None

        logger.warning("Shadow agent path failed: %s", row.agent_error)
        return row

    def get_comparison_stats(self, chatbot_id: Optional[str] = None, limit: int = 100) -> ComparisonStats:
        rows = self.log.rows(chatbot_id)[-limit:]
        if not rows:
            return ComparisonStats()

        total = len(rows)
        tools = Counter(tool for row in rows for tool in row.agent_tool_calls)
        return ComparisonStats(
            total_comparisons=total,
            mode_match_rate=sum(1 for r in rows if r.mode_matches) / total * 100,
            avg_alignment_score=sum(r.decision_alignment_score for r in rows) / total,
            avg_agent_time_ms=sum(r.agent_execution_time_ms for r in rows) / total,
            avg_state_machine_time_ms=sum(r.state_machine_execution_time_ms for r in rows) / total,
            agent_error_rate=sum(
                1 for r in rows if r.agent_fallback_used or r.agent_error is not None
            ) / total * 100,
            most_used_tools=tools.most_common(10),
        )

    def get_recent_comparisons(
        self, chatbot_id: Optional[str] = None, limit: int = 20
    ) -> list[ShadowComparison]:
        """Newest first."""
        return list(reversed(self.log.rows(chatbot_id)))[:limit]

    def get_mismatches(
        self,
        chatbot_id: Optional[str] = None,
        min_alignment: Optional[int] = None,
        limit: int = 20,
    ) -> list[ShadowComparison]:
        """Rows scoring below ``min_alignment`` (default: the configured threshold), worst first."""
        threshold = self._config.mismatch_threshold if min_alignment is None else min_alignment
        rows = [r for r in self.log.rows(chatbot_id) if r.decision_alignment_score < threshold]
        rows.sort(key=lambda r: r.decision_alignment_score)
        return rows[:limit]
