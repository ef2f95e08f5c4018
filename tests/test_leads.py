"""Tests for the lead store, conversation summaries and booking links."""

import pytest

from leadflow.errors import StorageError
from leadflow.schemas.session_schema import IntentLevel, Lead, LeadBookingStatus
from leadflow.services.booking_link import (
    build_booking_link,
    extract_event_type,
    is_valid_scheduling_url,
)
from leadflow.services.leads import LeadRepository, generate_conversation_summary


def _lead(email: str = "jane@acme.com", chatbot_id: str = "bot-1", **kwargs) -> Lead:
    return Lead(chatbot_id=chatbot_id, email=email, **kwargs)


class TestLeadRepository:
    def setup_method(self):
        self.repo = LeadRepository()

    @pytest.mark.asyncio
    async def test_create_and_get(self):
        lead = await self.repo.create_lead(_lead(email="Jane@Acme.com"))
        assert lead.email == "jane@acme.com"
        assert (await self.repo.get_lead(lead.id)).email == "jane@acme.com"

    @pytest.mark.asyncio
    async def test_email_unique_per_chatbot(self):
        first = await self.repo.create_lead(_lead())
        second = await self.repo.create_lead(_lead(email="JANE@acme.com", name="Other"))
        assert second.id == first.id
        assert second.name is None

    @pytest.mark.asyncio
    async def test_same_email_other_chatbot(self):
        first = await self.repo.create_lead(_lead())
        other = await self.repo.create_lead(_lead(chatbot_id="bot-2"))
        assert other.id != first.id

    @pytest.mark.asyncio
    async def test_blank_email_rejected(self):
        with pytest.raises(StorageError):
            await self.repo.create_lead(_lead(email="  "))

    @pytest.mark.asyncio
    async def test_find_by_email(self):
        lead = await self.repo.create_lead(_lead())
        assert (await self.repo.find_by_email("bot-1", " JANE@acme.com ")).id == lead.id
        assert await self.repo.email_exists("bot-1", "jane@acme.com")
        assert not await self.repo.email_exists("bot-2", "jane@acme.com")

    @pytest.mark.asyncio
    async def test_update_ignores_none(self):
        lead = await self.repo.create_lead(_lead(name="Jane"))
        updated = await self.repo.update_lead(lead.id, {"name": None, "reason_for_interest": "Support"})
        assert updated.name == "Jane"
        assert updated.reason_for_interest == "Support"
        assert updated.updated_at >= lead.updated_at

    @pytest.mark.asyncio
    async def test_update_rejects_identity_fields(self):
        lead = await self.repo.create_lead(_lead())
        with pytest.raises(ValueError, match="Cannot update"):
            await self.repo.update_lead(lead.id, {"email": "other@acme.com"})

    @pytest.mark.asyncio
    async def test_update_missing_lead(self):
        with pytest.raises(StorageError):
            await self.repo.update_lead("missing", {"name": "Jane"})

    @pytest.mark.asyncio
    async def test_mark_as_notified(self):
        lead = await self.repo.create_lead(_lead())
        await self.repo.mark_as_notified(lead.id)
        stored = await self.repo.get_lead(lead.id)
        assert stored.owner_notified
        assert stored.notification_sent_at is not None

    @pytest.mark.asyncio
    async def test_returned_copies_are_detached(self):
        lead = await self.repo.create_lead(_lead())
        lead.questions_asked.append("mutated")
        assert (await self.repo.get_lead(lead.id)).questions_asked == []

    @pytest.mark.asyncio
    async def test_filters_and_analytics(self):
        a = await self.repo.create_lead(_lead(email="a@acme.com", intent_level=IntentLevel.HIGH))
        await self.repo.create_lead(_lead(email="b@acme.com", intent_level=IntentLevel.MEDIUM))
        await self.repo.create_lead(_lead(email="c@other.com", chatbot_id="bot-2"))
        await self.repo.update_booking_status(a.id, LeadBookingStatus.BOOKED)

        high = await self.repo.get_leads_by_chatbot("bot-1", intent_level=IntentLevel.HIGH)
        assert [lead.email for lead in high] == ["a@acme.com"]

        analytics = await self.repo.get_lead_analytics("bot-1")
        assert analytics["total_leads"] == 2
        assert analytics["booking_rate"] == 50.0
        assert analytics["by_intent"] == {"HIGH_INTENT": 1, "MEDIUM_INTENT": 1}


class TestConversationSummary:
    def test_full_summary(self):
        summary = generate_conversation_summary(
            ["pricing?", "integrations?"], IntentLevel.HIGH, {"team_size": "25"}
        )
        assert summary == (
            "Asked 2 question(s) about: pricing?, integrations?. "
            "Intent: high intent. Qualification: team_size: 25"
        )

    def test_truncates_questions(self):
        summary = generate_conversation_summary(["a", "b", "c", "d"], IntentLevel.LOW, {})
        assert summary.startswith("Asked 4 question(s) about: a, b, c...")

    def test_no_questions(self):
        assert generate_conversation_summary([], IntentLevel.MEDIUM, {}) == "Intent: medium intent"


class TestBookingLink:
    def test_prefills_lead_details(self):
        lead = _lead(name="Jane Doe", reason_for_interest="Support automation")
        url = build_booking_link("https://calendly.com/acme/30min/", lead)
        assert url == (
            "https://calendly.com/acme/30min"
            "?name=Jane+Doe&email=jane%40acme.com&a1=Support+automation"
        )

    def test_without_lead(self):
        assert build_booking_link(" https://cal.com/acme ") == "https://cal.com/acme"

    def test_valid_scheduling_urls(self):
        assert is_valid_scheduling_url("https://calendly.com/acme/30min")
        assert is_valid_scheduling_url("https://app.cal.com/acme")
        assert not is_valid_scheduling_url("ftp://calendly.com/acme")
        assert not is_valid_scheduling_url("https://evilcalendly.com/acme")

    def test_event_type(self):
        assert extract_event_type("https://calendly.com/acme/30min") == "30min"
        assert extract_event_type("https://calendly.com/acme") is None
