"""
Conversation session lifecycle: creation, expiry, locking and persistence.

A session is keyed by (chatbot_id, session_id). Turns for the same key are
serialized with a per-key asyncio.Lock, and every turn's outcome is written
with a single ``apply_transition`` call so partial updates never land.
Writes are optimistic: each save carries the ``version`` it was read at, and
a save against a newer stored version raises StorageError.

Usage:
    store = SessionStore(config)
    async with store.lock(chatbot_id, session_id):
        session = await store.get_or_create_session(chatbot_id, session_id, context)
        result = await state_machine.process_message(session, message, lead_config)
        session = await store.apply_transition(session, message, result)
"""

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import AsyncIterator, Optional, Protocol

from leadflow.config import AppConfig
from leadflow.conversation.intent_scorer import is_higher_intent, merge_signals
from leadflow.errors import StorageError
from leadflow.schemas.action_schema import (
    CaptureLead,
    SaveQualification,
    SendNotification,
    ShowBooking,
    StateTransitionResult,
    UpdateIntent,
)
from leadflow.schemas.session_schema import (
    BookingStatus,
    ConversationSession,
    SessionContext,
    SessionMessage,
    utcnow,
)

logger = logging.getLogger(__name__)

SessionKey = tuple[str, str]


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class SessionRepository(Protocol):
    """Persistence boundary for sessions. Implementations raise StorageError."""

    async def load(self, key: SessionKey) -> Optional[ConversationSession]: ...

    async def load_by_id(self, row_id: str) -> Optional[ConversationSession]: ...

    async def save(self, session: ConversationSession) -> ConversationSession:
        """Store the session and return it at its new version."""
        ...

    async def list_all(self) -> list[ConversationSession]: ...


class InMemorySessionRepository:
    """
    Dict-backed session rows.

    In production, this would be a database table with a unique index on
    (chatbot_id, session_id) for open rows. Rows are copied on the way in
    and out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._rows: dict[str, ConversationSession] = {}
        self._latest: dict[SessionKey, str] = {}

    async def load(self, key: SessionKey) -> Optional[ConversationSession]:
        row_id = self._latest.get(key)
        if row_id is None:
            return None
        return self._rows[row_id].model_copy(deep=True)

    async def load_by_id(self, row_id: str) -> Optional[ConversationSession]:
        row = self._rows.get(row_id)
        return row.model_copy(deep=True) if row else None

    async def save(self, session: ConversationSession) -> ConversationSession:
        stored = self._rows.get(session.id)
        if stored is not None:
            if stored.is_closed:
                raise StorageError(f"Session {session.id} is closed")
            if stored.version != session.version:
                raise StorageError(
                    f"Stale write for session {session.id}: "
                    f"read at version {session.version}, stored version is {stored.version}"
                )
        saved = session.model_copy(update={"version": session.version + 1}, deep=True)
        self._rows[session.id] = saved
        self._latest[session.key] = session.id
        return saved.model_copy(deep=True)

    async def list_all(self) -> list[ConversationSession]:
        return [row.model_copy(deep=True) for row in self._rows.values()]


class SessionStore:
    """Owns session lifetime on top of a SessionRepository."""

    def __init__(self, config: AppConfig, repository: Optional[SessionRepository] = None) -> None:
        self._config = config
        self._repo = repository if repository is not None else InMemorySessionRepository()
        self._locks: dict[SessionKey, _KeyLock] = {}

    @property
    def expiry(self) -> timedelta:
        return timedelta(hours=self._config.session.expiry_hours)

    def is_expired(self, session: ConversationSession, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return now - session.last_activity_at > self.expiry

    @asynccontextmanager
    async def lock(self, chatbot_id: str, session_id: str) -> AsyncIterator[None]:
        """
        Serialize turns for one session key.

        The lock entry lives while anyone holds or waits on it, so callers
        queued behind a turn always share that turn's lock.
        """
        key = (chatbot_id, session_id)
        entry = self._locks.setdefault(key, _KeyLock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @property
    def active_lock_count(self) -> int:
        return len(self._locks)

    async def get_or_create_session(
        self,
        chatbot_id: str,
        session_id: str,
        context: Optional[SessionContext] = None,
        now: Optional[datetime] = None,
    ) -> ConversationSession:
        """
        Load the open session for the key, or start a new one.

        A session idle for longer than the expiry window is closed and
        replaced by a fresh row (new ``id``) under the same key.
        """
        now = now or utcnow()
        context = context or SessionContext()
        existing = await self._repo.load((chatbot_id, session_id))

        if existing is not None and not existing.is_closed:
            if not self.is_expired(existing, now):
                updated = existing.model_copy(update={
                    "page_url": context.page_url or existing.page_url,
                    "referrer_url": existing.referrer_url or context.referrer_url,
                    "user_agent": existing.user_agent or context.user_agent,
                })
                if updated != existing:
                    updated = await self._repo.save(updated)
                return updated

            logger.info("Session %s expired, starting a new one", existing.id)
            existing.closed_at = now
            await self._repo.save(existing)

        session = ConversationSession(
            chatbot_id=chatbot_id,
            session_id=session_id,
            page_url=context.page_url,
            referrer_url=context.referrer_url,
            user_agent=context.user_agent,
            started_at=now,
            last_activity_at=now,
        )
        session = await self._repo.save(session)
        logger.debug("Session created: %s (%s/%s)", session.id, chatbot_id, session_id)
        return session

    async def get_session(self, chatbot_id: str, session_id: str) -> Optional[ConversationSession]:
        return await self._repo.load((chatbot_id, session_id))

    async def get_session_by_id(self, row_id: str) -> Optional[ConversationSession]:
        return await self._repo.load_by_id(row_id)

    async def apply_transition(
        self,
        session: ConversationSession,
        message: str,
        result: StateTransitionResult,
        now: Optional[datetime] = None,
    ) -> ConversationSession:
        """
        Persist one turn in a single write.

        Applies mode, intent (signals unioned, level never lowered), capture
        and qualification sub-state, booking status, both history entries
        and the message counter. Returns the saved session.

        Raises:
            StorageError: If the session is closed or the write fails.
        """
        if session.is_closed:
            raise StorageError(f"Session {session.id} is closed")
        now = now or utcnow()
        updated = session.model_copy(deep=True)

        updated.mode = result.next_mode
        if is_higher_intent(result.intent_level, updated.intent_level):
            updated.intent_level = result.intent_level
        updated.lead_capture_step = result.lead_capture_step
        updated.capture_attempts = result.capture_attempts
        updated.qualification_step = result.qualification_step
        if result.booking_status is not None:
            updated.booking_status = result.booking_status

        for action in result.actions:
            if isinstance(action, UpdateIntent):
                updated.intent_signals = merge_signals(updated.intent_signals, action.signals)
                if is_higher_intent(action.level, updated.intent_level):
                    updated.intent_level = action.level
            elif isinstance(action, SaveQualification):
                updated.qualification_answers[action.question_id] = action.answer
            elif isinstance(action, (CaptureLead, ShowBooking, SendNotification)):
                continue  # lead store and notification sinks
            else:
                raise TypeError(f"Unknown action type: {type(action).__name__}")

        history = updated.message_history + [
            SessionMessage(role="user", content=message, timestamp=now),
            SessionMessage(role="assistant", content=result.response, timestamp=now),
        ]
        updated.message_history = history[-self._config.session.max_message_history:]
        updated.message_count += 2
        updated.last_activity_at = now

        updated = await self._repo.save(updated)
        logger.debug(
            "Session %s saved: mode=%s intent=%s count=%d",
            updated.id, updated.mode.value, updated.intent_level.value, updated.message_count,
        )
        return updated

    async def set_lead_id(self, session: ConversationSession, lead_id: str) -> ConversationSession:
        """Link the session to a lead. A lead id, once set, never changes."""
        if session.lead_id is not None:
            if session.lead_id != lead_id:
                logger.warning(
                    "Session %s already linked to lead %s, ignoring %s",
                    session.id, session.lead_id, lead_id,
                )
            return session
        if session.is_closed:
            raise StorageError(f"Session {session.id} is closed")
        return await self._repo.save(session.model_copy(update={"lead_id": lead_id}))

    async def update_booking_status(
        self,
        session: ConversationSession,
        status: BookingStatus,
        clicked_at: Optional[datetime] = None,
    ) -> ConversationSession:
        if session.is_closed:
            raise StorageError(f"Session {session.id} is closed")
        changes: dict = {"booking_status": status}
        if clicked_at is not None:
            changes["booking_link_clicked_at"] = clicked_at
        return await self._repo.save(session.model_copy(update=changes))

    async def close_session(
        self, chatbot_id: str, session_id: str, now: Optional[datetime] = None
    ) -> Optional[ConversationSession]:
        """Close the open session for the key, if any. Closing is terminal."""
        session = await self._repo.load((chatbot_id, session_id))
        if session is None or session.is_closed:
            return session
        closed = await self._repo.save(session.model_copy(update={"closed_at": now or utcnow()}))
        logger.debug("Session closed: %s", closed.id)
        return closed

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Close every open session idle past the expiry window."""
        now = now or utcnow()
        closed = 0
        for session in await self._repo.list_all():
            if session.is_closed or not self.is_expired(session, now):
                continue
            try:
                await self._repo.save(session.model_copy(update={"closed_at": now}))
            except StorageError:
                # a turn wrote the session after it was listed
                logger.debug("Skipped sweeping session %s", session.id, exc_info=True)
                continue
            closed += 1
        if closed:
            logger.info("Expiry sweep closed %d session(s)", closed)
        return closed

    async def get_active_sessions(self, chatbot_id: Optional[str] = None) -> list[ConversationSession]:
        return [
            s for s in await self._repo.list_all()
            if not s.is_closed and (chatbot_id is None or s.chatbot_id == chatbot_id)
        ]

    async def get_session_stats(self, chatbot_id: Optional[str] = None) -> dict:
        sessions = [
            s for s in await self._repo.list_all()
            if chatbot_id is None or s.chatbot_id == chatbot_id
        ]
        active = [s for s in sessions if not s.is_closed]
        total_messages = sum(s.message_count for s in sessions)
        return {
            "total_sessions": len(sessions),
            "active_sessions": len(active),
            "avg_message_count": round(total_messages / len(sessions), 2) if sessions else 0.0,
            "mode_distribution": dict(Counter(s.mode.value for s in sessions)),
            "sessions_with_lead": sum(1 for s in sessions if s.lead_id),
        }


class ExpirySweeper:
    """Runs ``sweep_expired`` on a periodic timer, independent of turns."""

    def __init__(self, store: SessionStore, interval_sec: float) -> None:
        self._store = store
        self._interval = interval_sec
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="session-expiry-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self._store.sweep_expired()
            except StorageError:
                logger.error("Expiry sweep failed", exc_info=True)
