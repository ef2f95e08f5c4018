"""Tests for intent scoring."""

from leadflow.conversation.intent_scorer import (
    PAGE_SIGNAL,
    analyze_readiness,
    calculate_intent_level,
    check_page_intent,
    detect_intent,
    find_keywords,
    get_intent_summary,
    is_explicit_booking_request,
    is_higher_intent,
    is_pricing_request,
    meets_intent_trigger,
    merge_signals,
)
from leadflow.schemas.session_schema import IntentLevel


class TestKeywords:
    def test_finds_default_keywords(self):
        assert find_keywords("How much does it cost?", ["cost", "demo"]) == ["cost"]

    def test_case_insensitive(self):
        assert find_keywords("BOOK a DEMO", ["book", "demo"]) == ["book", "demo"]

    def test_deduplicates(self):
        assert find_keywords("demo demo demo", ["demo", "Demo"]) == ["demo"]

    def test_no_keywords(self):
        assert find_keywords("hello there", ["cost"]) == []


class TestPageIntent:
    def test_pricing_page(self):
        assert check_page_intent("https://acme.io/pricing")

    def test_blog_page(self):
        assert not check_page_intent("https://acme.io/blog/hello")

    def test_empty_url(self):
        assert not check_page_intent("")

    def test_custom_pattern(self):
        assert check_page_intent("https://acme.io/enterprise", ["/enterprise"])


class TestIntentLevel:
    def test_no_signals_is_low(self):
        assert calculate_intent_level([], False) == IntentLevel.LOW

    def test_one_keyword_is_medium(self):
        assert calculate_intent_level(["keyword:cost"], False) == IntentLevel.MEDIUM

    def test_page_boost_counts_as_signal(self):
        assert calculate_intent_level([], True) == IntentLevel.MEDIUM

    def test_three_signals_is_high(self):
        signals = ["keyword:cost", "keyword:demo"]
        assert calculate_intent_level(signals, True) == IntentLevel.HIGH

    def test_non_keyword_signals_ignored(self):
        assert calculate_intent_level(["other:thing"], False) == IntentLevel.LOW


class TestDetectIntent:
    def test_keyword_on_pricing_page(self):
        result = detect_intent("How much does it cost?", "https://acme.io/pricing")
        assert result.level == IntentLevel.MEDIUM
        assert result.page_intent_boost
        assert "keyword:cost" in result.signals
        assert PAGE_SIGNAL in result.signals

    def test_three_keywords_is_high(self):
        result = detect_intent("Can we book a demo call?")
        assert result.level == IntentLevel.HIGH

    def test_plain_greeting_is_low(self):
        result = detect_intent("hello there")
        assert result.level == IntentLevel.LOW
        assert result.signals == []

    def test_signals_never_shrink(self):
        existing = ["keyword:price", "keyword:demo", "keyword:book"]
        result = detect_intent("thanks", existing_signals=existing)
        assert set(existing) <= set(result.signals)
        assert result.level == IntentLevel.HIGH

    def test_page_signal_survives_navigation(self):
        result = detect_intent("ok", page_url="https://acme.io/blog", existing_signals=[PAGE_SIGNAL])
        assert result.level == IntentLevel.MEDIUM
        assert not result.page_intent_boost

    def test_custom_keywords_replace_defaults(self):
        result = detect_intent("enterprise plan please", keywords=["enterprise"])
        assert result.keywords_found == ["enterprise"]
        assert detect_intent("what does it cost", keywords=["enterprise"]).level == IntentLevel.LOW

    def test_merge_preserves_order(self):
        assert merge_signals(["a", "b"], ["b", "c"]) == ["a", "b", "c"]


class TestTriggers:
    def test_always_trigger(self):
        assert meets_intent_trigger(IntentLevel.LOW, "ALWAYS")

    def test_low_does_not_meet_medium(self):
        assert not meets_intent_trigger(IntentLevel.LOW, "MEDIUM_INTENT")

    def test_high_meets_medium(self):
        assert meets_intent_trigger(IntentLevel.HIGH, "MEDIUM_INTENT")

    def test_medium_does_not_meet_high(self):
        assert not meets_intent_trigger(IntentLevel.MEDIUM, "HIGH_INTENT")

    def test_is_higher_intent(self):
        assert is_higher_intent(IntentLevel.HIGH, IntentLevel.MEDIUM)
        assert not is_higher_intent(IntentLevel.LOW, IntentLevel.LOW)


class TestMessageClassifiers:
    def test_explicit_booking(self):
        assert is_explicit_booking_request("I'd like to book a call")
        assert is_explicit_booking_request("Can I talk to sales?")

    def test_question_is_not_booking(self):
        assert not is_explicit_booking_request("how much does this cost?")

    def test_pricing_request(self):
        assert is_pricing_request("how much does this cost")
        assert is_pricing_request("Can I get a quote?")

    def test_readiness(self):
        result = analyze_readiness("We're ready to start asap")
        assert result.is_ready
        assert "commitment_language" in result.indicators
        assert "time_sensitive" in result.indicators

    def test_budget_alone_is_not_ready(self):
        result = analyze_readiness("what's the ROI on this budget")
        assert not result.is_ready
        assert result.indicators == ["budget_aware"]

    def test_summary(self):
        result = detect_intent("what does it cost?", "https://acme.io/pricing")
        summary = get_intent_summary(result)
        assert summary.startswith("Researching/interested")
        assert "cost" in summary
        assert "[high-intent page]" in summary
