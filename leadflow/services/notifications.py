"""
Owner notifications for new leads, bookings and high-intent visitors.

Delivery is fire-and-forget: ``NotificationDispatcher.dispatch`` schedules
the sends as background tasks with a bounded timeout and returns at once,
so a slow webhook never holds up a visitor's turn. Every attempt is
recorded in the dispatcher's delivery log.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional, Protocol, Sequence

import httpx
from pydantic import BaseModel, Field

from leadflow.logging_context import get_turn_logger
from leadflow.schemas.action_schema import NotificationType
from leadflow.schemas.session_schema import (
    ConversationSession,
    IntentLevel,
    Lead,
    LeadBookingStatus,
    utcnow,
)

logger = get_turn_logger(__name__)


class NotificationPayload(BaseModel):
    chatbot_id: str
    session_id: Optional[str] = None
    lead_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    page_url: Optional[str] = None
    intent_level: Optional[IntentLevel] = None
    questions_asked: list[str] = Field(default_factory=list)
    qualification_answers: dict[str, str] = Field(default_factory=dict)
    booking_status: Optional[LeadBookingStatus] = None
    conversation_summary: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class DeliveryRecord(BaseModel):
    event: NotificationType
    sink: str
    lead_id: Optional[str] = None
    success: bool
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


def build_payload(
    chatbot_id: str,
    lead: Optional[Lead] = None,
    session: Optional[ConversationSession] = None,
) -> NotificationPayload:
    """Assemble the notification body from whatever is known about the visitor."""
    payload = NotificationPayload(chatbot_id=chatbot_id)
    if session is not None:
        payload.session_id = session.session_id
        payload.page_url = session.page_url
        payload.intent_level = session.intent_level
        payload.qualification_answers = dict(session.qualification_answers)
    if lead is not None:
        payload.lead_id = lead.id
        payload.email = lead.email
        payload.name = lead.name
        payload.page_url = lead.page_url or payload.page_url
        payload.intent_level = lead.intent_level or payload.intent_level
        payload.questions_asked = list(lead.questions_asked)
        payload.qualification_answers = dict(lead.qualification_answers) or payload.qualification_answers
        payload.booking_status = lead.booking_status
        payload.conversation_summary = lead.conversation_summary
    return payload


class NotificationSink(Protocol):
    name: str

    async def notify(self, event: NotificationType, payload: NotificationPayload) -> bool: ...


class LoggingNotificationSink:
    """Writes notifications to the log and keeps them in memory."""

    name = "log"

    def __init__(self) -> None:
        self.sent: list[tuple[NotificationType, NotificationPayload]] = []

    async def notify(self, event: NotificationType, payload: NotificationPayload) -> bool:
        self.sent.append((event, payload))
        logger.info(
            "Notification %s for chatbot %s (lead=%s, email=%s)",
            event.value, payload.chatbot_id, payload.lead_id, payload.email,
        )
        return True


class WebhookNotificationSink:
    """POSTs the payload as JSON to the owner's webhook URL."""

    name = "webhook"

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def notify(self, event: NotificationType, payload: NotificationPayload) -> bool:
        body = {"event": event.value, **payload.model_dump(mode="json")}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._url, json=body)
        except httpx.HTTPError as exc:
            logger.warning("Webhook %s failed for %s: %s", self._url, event.value, exc)
            return False

        if not response.is_success:
            logger.warning("Webhook %s returned HTTP %d for %s", self._url, response.status_code, event.value)
            return False
        return True


class NotificationDispatcher:
    """Fans each event out to every sink in the background."""

    def __init__(self, sinks: Sequence[NotificationSink], timeout: float = 10.0) -> None:
        self._sinks = list(sinks)
        self._timeout = timeout
        self._pending: set[asyncio.Task] = set()
        self.deliveries: list[DeliveryRecord] = []

    @property
    def pending(self) -> int:
        return len(self._pending)

    def dispatch(self, event: NotificationType, payload: NotificationPayload) -> None:
        """Schedule delivery and return immediately."""
        for sink in self._sinks:
            task = asyncio.create_task(self._deliver(sink, event, payload))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(
        self, sink: NotificationSink, event: NotificationType, payload: NotificationPayload
    ) -> bool:
        error = None
        try:
            success = await asyncio.wait_for(sink.notify(event, payload), timeout=self._timeout)
        except asyncio.TimeoutError:
            success, error = False, f"timed out after {self._timeout:.1f}s"
            logger.warning("Notification %s via %s %s", event.value, sink.name, error)
        except Exception as exc:
            success, error = False, str(exc)
            logger.error("Notification %s via %s failed", event.value, sink.name, exc_info=True)

        self.deliveries.append(DeliveryRecord(
            event=event,
            sink=sink.name,
            lead_id=payload.lead_id,
            success=success,
            error=error if error else (None if success else "sink reported failure"),
        ))
        return success

    async def drain(self) -> None:
        """Wait for every scheduled delivery to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
