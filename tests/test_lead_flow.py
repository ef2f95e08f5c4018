"""Tests for the lead capture and qualification sub-flows."""

import pytest

from leadflow import prompts
from leadflow.conversation.lead_flow import (
    complete_capture,
    extract_email,
    extract_name,
    is_valid_name,
    next_capture_step,
    process_capture_step,
    process_qualification_step,
)
from leadflow.schemas.session_schema import ConversationMode, LeadCaptureStep
from tests.conftest import make_booking_config, make_lead_config, make_qualifying_config


class TestEmailExtraction:
    @pytest.mark.parametrize("message, expected", [
        ("sure, it's jane@acme.com", "jane@acme.com"),
        ("Jane.Doe+work@Acme.IO thanks", "jane.doe+work@acme.io"),
        ("reach me at (bob_smith@mail.example.org).", "bob_smith@mail.example.org"),
    ])
    def test_extracts_lower_cased(self, message, expected):
        assert extract_email(message) == expected

    def test_no_at_sign(self):
        assert extract_email("my email is jane at acme dot com") is None

    def test_incomplete_address(self):
        assert extract_email("jane@acme") is None


class TestNameExtraction:
    def test_my_name_is(self):
        assert extract_name("my name is Jane Doe") == "Jane Doe"

    def test_i_am(self):
        assert extract_name("Hi, I'm Jane") == "Jane"

    def test_capitalized_pair(self):
        assert extract_name("Sure thing, Jane Doe here") == "Jane Doe"

    def test_bare_reply(self):
        assert extract_name("jane") == "jane"

    def test_filler_is_not_a_name(self):
        assert extract_name("I'm just looking around for now, thanks a lot") is None

    def test_digits_rejected(self):
        assert not is_valid_name("R2D2")
        assert extract_name("555 1234") is None

    def test_length_bounds(self):
        assert not is_valid_name("J")
        assert not is_valid_name("J" * 51)
        assert is_valid_name("Jo")


class TestCaptureSteps:
    def test_email_then_name(self):
        config = make_lead_config(require_name=True)
        result = process_capture_step(LeadCaptureStep.ASK_EMAIL, "sure, it's jane@acme.com", config)
        assert result.success
        assert result.next_step == LeadCaptureStep.ASK_NAME
        assert result.lead_data.email == "jane@acme.com"
        assert result.response == prompts.ASK_NAME_PROMPT

    def test_name_not_required_completes(self):
        config = make_lead_config(require_name=False)
        result = process_capture_step(LeadCaptureStep.ASK_EMAIL, "jane@acme.com", config)
        assert result.completed
        assert result.response == ""

    def test_reason_follows_name(self):
        config = make_lead_config(require_name=True, require_reason=True)
        assert next_capture_step(LeadCaptureStep.ASK_NAME, config) == LeadCaptureStep.ASK_REASON
        result = process_capture_step(LeadCaptureStep.ASK_REASON, "Automating support", config)
        assert result.completed
        assert result.lead_data.reason_for_interest == "Automating support"

    def test_reason_without_name(self):
        config = make_lead_config(require_name=False, require_reason=True)
        assert next_capture_step(LeadCaptureStep.ASK_EMAIL, config) == LeadCaptureStep.ASK_REASON

    def test_none_step_starts_at_email(self):
        result = process_capture_step(None, "jane@acme.com", make_lead_config())
        assert result.lead_data.email == "jane@acme.com"

    def test_invalid_email_reprompts_without_advancing(self):
        result = process_capture_step(LeadCaptureStep.ASK_EMAIL, "not telling", make_lead_config())
        assert not result.success
        assert result.next_step == LeadCaptureStep.ASK_EMAIL
        assert result.response == prompts.INVALID_EMAIL_REPROMPT
        assert result.attempts == 1
        assert result.lead_data is None

    def test_email_abandoned_after_max_retries(self):
        result = process_capture_step(
            LeadCaptureStep.ASK_EMAIL, "nope", make_lead_config(), attempts=2, max_retries=3
        )
        assert result.abandoned
        assert result.next_step is None
        assert result.response == prompts.CAPTURE_ABANDONED

    def test_optional_step_skipped_after_max_retries(self):
        config = make_lead_config(require_name=True, require_reason=True)
        result = process_capture_step(
            LeadCaptureStep.ASK_NAME, "12345", config, attempts=2, max_retries=3
        )
        assert not result.abandoned
        assert result.next_step == LeadCaptureStep.ASK_REASON
        assert result.response == prompts.ASK_REASON_PROMPT

    def test_completed_step_is_noop(self):
        result = process_capture_step(LeadCaptureStep.COMPLETED, "anything", make_lead_config())
        assert result.completed
        assert result.lead_data is None


class TestRouting:
    def test_qualification_first(self):
        route = complete_capture(make_qualifying_config())
        assert route.mode == ConversationMode.QUALIFICATION
        assert route.question.id == "team_size"
        assert route.response.endswith("How large is your team?")

    def test_booking_when_link_configured(self):
        route = complete_capture(make_booking_config())
        assert route.mode == ConversationMode.BOOKING
        assert route.offer_booking

    def test_booking_enabled_without_link_closes(self):
        route = complete_capture(make_lead_config(booking_enabled=True, booking_link=None))
        assert route.mode == ConversationMode.CLOSURE

    def test_custom_closure_message(self):
        route = complete_capture(make_lead_config(closure_message="Talk soon!"))
        assert route.response == "Talk soon!"

    def test_disabled_qualification_is_skipped(self):
        config = make_qualifying_config(qualification_enabled=False)
        assert complete_capture(config).mode == ConversationMode.BOOKING


class TestQualification:
    def test_first_answer_asks_second(self):
        result = process_qualification_step(0, "about 25 people", make_qualifying_config())
        assert result.question_id == "team_size"
        assert result.answer == "about 25 people"
        assert result.next_step == 1
        assert result.next_question.id == "timeline"
        assert not result.done

    def test_last_answer_routes_to_booking(self):
        result = process_qualification_step(1, "next month", make_qualifying_config())
        assert result.question_id == "timeline"
        assert result.next_step == 2
        assert result.done
        assert result.route.mode == ConversationMode.BOOKING

    def test_blank_required_answer_reasks(self):
        result = process_qualification_step(0, "   ", make_qualifying_config())
        assert result.question_id is None
        assert result.next_step == 0
        assert result.response == "How large is your team?"

    def test_blank_optional_answer_accepted(self):
        result = process_qualification_step(1, "", make_qualifying_config())
        assert result.question_id == "timeline"
        assert result.answer == ""

    def test_past_the_end_routes(self):
        result = process_qualification_step(5, "hi", make_qualifying_config())
        assert result.done
        assert result.question_id is None
