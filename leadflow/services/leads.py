"""
Lead records captured from conversations.

In production, this would be a leads table in the chatbot owner's
database (or a CRM such as HubSpot). Email is unique per chatbot, so
capturing the same address twice returns the existing lead.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Iterable, Mapping, Optional

from leadflow.errors import StorageError
from leadflow.schemas.session_schema import IntentLevel, Lead, LeadBookingStatus, utcnow

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {
    "name", "phone", "reason_for_interest", "intent_level", "qualification_answers",
    "questions_asked", "message_count", "conversation_summary", "booking_status",
}


class LeadRepository:
    """In-memory lead store keyed by lead id, unique on (chatbot_id, email)."""

    def __init__(self) -> None:
        self._leads: dict[str, Lead] = {}
        self._by_email: dict[tuple[str, str], str] = {}

    async def create_lead(self, lead: Lead) -> Lead:
        """Insert a lead, or return the existing one for the same chatbot and email."""
        email = lead.email.strip().lower()
        if not email:
            raise StorageError("Lead email is required")
        key = (lead.chatbot_id, email)
        existing_id = self._by_email.get(key)
        if existing_id is not None:
            logger.debug("Lead already exists for %s on chatbot %s", email, lead.chatbot_id)
            return self._leads[existing_id].model_copy(deep=True)

        stored = lead.model_copy(update={"email": email})
        self._leads[stored.id] = stored
        self._by_email[key] = stored.id
        logger.info("Lead created: %s (chatbot %s)", stored.id, stored.chatbot_id)
        return stored.model_copy(deep=True)

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        lead = self._leads.get(lead_id)
        return lead.model_copy(deep=True) if lead else None

    async def find_by_email(self, chatbot_id: str, email: str) -> Optional[Lead]:
        lead_id = self._by_email.get((chatbot_id, email.strip().lower()))
        return await self.get_lead(lead_id) if lead_id else None

    async def email_exists(self, chatbot_id: str, email: str) -> bool:
        return (chatbot_id, email.strip().lower()) in self._by_email

    async def update_lead(self, lead_id: str, updates: Mapping[str, object]) -> Lead:
        """
        Apply a partial update. ``None`` values are ignored.

        Raises:
            StorageError: If the lead does not exist.
            ValueError: If an update names a field that cannot be changed.
        """
        lead = self._leads.get(lead_id)
        if lead is None:
            raise StorageError(f"Lead {lead_id} not found")
        unknown = set(updates) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update lead fields: {sorted(unknown)}")

        changes = {k: v for k, v in updates.items() if v is not None}
        changes["updated_at"] = utcnow()
        updated = lead.model_copy(update=changes)
        self._leads[lead_id] = updated
        return updated.model_copy(deep=True)

    async def mark_as_notified(self, lead_id: str, when: Optional[datetime] = None) -> None:
        lead = self._leads.get(lead_id)
        if lead is None:
            raise StorageError(f"Lead {lead_id} not found")
        self._leads[lead_id] = lead.model_copy(update={
            "owner_notified": True,
            "notification_sent_at": when or utcnow(),
        })

    async def update_booking_status(self, lead_id: str, status: LeadBookingStatus) -> Lead:
        return await self.update_lead(lead_id, {"booking_status": status})

    async def get_leads_by_chatbot(
        self,
        chatbot_id: str,
        intent_level: Optional[IntentLevel] = None,
        booking_status: Optional[LeadBookingStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Lead]:
        """Newest first, optionally filtered."""
        leads = [
            lead for lead in self._leads.values()
            if lead.chatbot_id == chatbot_id
            and (intent_level is None or lead.intent_level == intent_level)
            and (booking_status is None or lead.booking_status == booking_status)
        ]
        leads.sort(key=lambda lead: lead.created_at, reverse=True)
        return [lead.model_copy(deep=True) for lead in leads[offset:offset + limit]]

    async def get_lead_analytics(self, chatbot_id: str) -> dict:
        leads = [lead for lead in self._leads.values() if lead.chatbot_id == chatbot_id]
        booked = sum(1 for lead in leads if lead.booking_status == LeadBookingStatus.BOOKED)
        return {
            "total_leads": len(leads),
            "by_intent": dict(Counter(lead.intent_level.value for lead in leads if lead.intent_level)),
            "by_booking_status": dict(Counter(lead.booking_status.value for lead in leads)),
            "booking_rate": round(booked / len(leads) * 100, 1) if leads else 0.0,
        }


def generate_conversation_summary(
    questions: Iterable[str],
    intent_level: IntentLevel,
    qualification_answers: Mapping[str, str],
) -> str:
    """One-line summary stored on the lead for the owner's notification."""
    questions = list(questions)
    parts = []
    if questions:
        more = "..." if len(questions) > 3 else ""
        parts.append(f"Asked {len(questions)} question(s) about: {', '.join(questions[:3])}{more}")

    parts.append(f"Intent: {intent_level.value.replace('_', ' ').lower()}")

    if qualification_answers:
        answers = "; ".join(f"{k}: {v}" for k, v in qualification_answers.items())
        parts.append(f"Qualification: {answers}")

    return ". ".join(parts)
