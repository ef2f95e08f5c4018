"""
Deterministic cohort assignment for the staged agent rollout.

A chatbot's bucket is the first four bytes of SHA-256(chatbot_id), as a
big-endian integer, mod 100. Buckets below the rollout percentage go to
the agent cohort. The first assignment is persisted and returned from then
on, so tuning the percentage never moves a chatbot that already has a
cohort. Manual assignments always win and survive ``reset_all_cohorts``.

Usage:
    assigner = CohortAssigner(InMemoryCohortRepository(), rollout)
    cohort = await assigner.get_cohort("bot-123")
"""

import hashlib
import logging
from typing import Optional, Protocol

from leadflow.config import RolloutConfig
from leadflow.schemas.rollout_schema import Cohort, CohortAssignment, CohortStats

logger = logging.getLogger(__name__)

BUCKET_COUNT = 100


def hash_bucket(chatbot_id: str) -> int:
    """Stable 0-99 bucket for an identifier."""
    digest = hashlib.sha256(chatbot_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") % BUCKET_COUNT


def cohort_for_bucket(bucket: int, rollout_percentage: int) -> Cohort:
    return Cohort.AGENT if bucket < rollout_percentage else Cohort.STATE_MACHINE


class CohortRepository(Protocol):
    async def get(self, chatbot_id: str) -> Optional[CohortAssignment]: ...

    async def insert_if_absent(self, assignment: CohortAssignment) -> CohortAssignment: ...

    async def upsert(self, assignment: CohortAssignment) -> CohortAssignment: ...

    async def delete(self, chatbot_id: str) -> bool: ...

    async def delete_automatic(self) -> int: ...

    async def list_all(self) -> list[CohortAssignment]: ...


class InMemoryCohortRepository:
    """
    Dict-backed cohort rows.

    In production, this would be a table with a primary key on chatbot_id;
    ``insert_if_absent`` maps to INSERT ... ON CONFLICT DO NOTHING followed by
    a read of the winning row.
    """

    def __init__(self) -> None:
        self._rows: dict[str, CohortAssignment] = {}

    async def get(self, chatbot_id: str) -> Optional[CohortAssignment]:
        return self._rows.get(chatbot_id)

    async def insert_if_absent(self, assignment: CohortAssignment) -> CohortAssignment:
        return self._rows.setdefault(assignment.chatbot_id, assignment)

    async def upsert(self, assignment: CohortAssignment) -> CohortAssignment:
        self._rows[assignment.chatbot_id] = assignment
        return assignment

    async def delete(self, chatbot_id: str) -> bool:
        return self._rows.pop(chatbot_id, None) is not None

    async def delete_automatic(self) -> int:
        automatic = [cid for cid, row in self._rows.items() if not row.is_manual]
        for cid in automatic:
            del self._rows[cid]
        return len(automatic)

    async def list_all(self) -> list[CohortAssignment]:
        return list(self._rows.values())


class CohortAssigner:
    """Computes, persists and overrides cohort assignments."""

    def __init__(self, repository: CohortRepository, rollout: RolloutConfig) -> None:
        self._repo = repository
        self._rollout = rollout

    @property
    def rollout_percentage(self) -> int:
        return max(0, min(100, self._rollout.agent_rollout_percentage))

    async def get_cohort(self, chatbot_id: str) -> Cohort:
        """Return the persisted cohort, assigning one on first access."""
        existing = await self._repo.get(chatbot_id)
        if existing is not None:
            return existing.cohort

        bucket = hash_bucket(chatbot_id)
        candidate = CohortAssignment(
            chatbot_id=chatbot_id,
            cohort=cohort_for_bucket(bucket, self.rollout_percentage),
        )
        stored = await self._repo.insert_if_absent(candidate)
        if stored is candidate:
            logger.info(
                "Chatbot %s assigned to cohort %s (bucket=%d, rollout=%d%%)",
                chatbot_id, stored.cohort.value, bucket, self.rollout_percentage,
            )
        return stored.cohort

    async def is_in_agent_cohort(self, chatbot_id: str) -> bool:
        return await self.get_cohort(chatbot_id) == Cohort.AGENT

    async def assign_cohort(self, chatbot_id: str, cohort: Cohort) -> CohortAssignment:
        """Manually pin a chatbot to a cohort, overriding any assignment."""
        assignment = await self._repo.upsert(
            CohortAssignment(chatbot_id=chatbot_id, cohort=cohort, is_manual=True)
        )
        logger.info("Chatbot %s manually assigned to cohort %s", chatbot_id, cohort.value)
        return assignment

    async def remove_cohort_assignment(self, chatbot_id: str) -> bool:
        """Drop the assignment so the next lookup recalculates it."""
        removed = await self._repo.delete(chatbot_id)
        if removed:
            logger.info("Removed cohort assignment for chatbot %s", chatbot_id)
        return removed

    async def get_all_cohorts(self) -> list[CohortAssignment]:
        rows = await self._repo.list_all()
        return sorted(rows, key=lambda row: row.assigned_at, reverse=True)

    async def get_cohort_stats(self) -> CohortStats:
        rows = await self._repo.list_all()
        total = len(rows)
        agent = sum(1 for row in rows if row.cohort == Cohort.AGENT)
        return CohortStats(
            total_chatbots=total,
            agent_cohort_count=agent,
            state_machine_cohort_count=total - agent,
            agent_percentage=(agent / total) * 100 if total else 0.0,
            manual_assignments=sum(1 for row in rows if row.is_manual),
        )

    async def reset_all_cohorts(self) -> int:
        """Forget every automatic assignment. Manual rows are kept."""
        removed = await self._repo.delete_automatic()
        logger.info("Reset %d automatic cohort assignment(s)", removed)
        return removed
