"""
Intent scoring from message text and page context.

Pure functions, no I/O. Signals are only ever added to a session's signal
set, so the derived intent level cannot go down within a session.

Usage:
    result = detect_intent("How much does it cost?", "https://acme.io/pricing", [])
    assert result.level == IntentLevel.MEDIUM  # keyword:cost + page boost = 2
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from leadflow.schemas.session_schema import CaptureTrigger, IntentLevel

logger = logging.getLogger(__name__)

DEFAULT_INTENT_KEYWORDS: tuple[str, ...] = (
    "price", "pricing", "cost", "quote", "estimate",
    "call", "book", "talk", "schedule", "demo",
    "consultation", "meeting", "appointment",
    "buy", "purchase", "start", "begin", "ready",
    "contact", "speak", "discuss", "help",
)

HIGH_INTENT_PAGE_PATTERNS: tuple[str, ...] = (
    "/pricing", "/prices", "/plans",
    "/contact", "/contact-us",
    "/book", "/booking", "/schedule",
    "/demo", "/request-demo",
    "/quote", "/get-quote",
    "/start", "/get-started",
    "/signup", "/sign-up", "/register",
)

KEYWORD_PREFIX = "keyword:"
PAGE_SIGNAL = "page:high_intent"

# Effective signal counts
HIGH_INTENT_THRESHOLD = 3
MEDIUM_INTENT_THRESHOLD = 1

_EXPLICIT_BOOKING_RE = [
    re.compile(r"\b(want|like|need)\s+to\s+(book|schedule|call|talk|speak)", re.IGNORECASE),
    re.compile(r"\b(can\s+i|i\s+want)\s+(book|schedule|call)", re.IGNORECASE),
    re.compile(r"\bschedule\s+a?\s*(call|meeting|demo)", re.IGNORECASE),
    re.compile(r"\bbook\s+a?\s*(call|meeting|appointment|demo)", re.IGNORECASE),
    re.compile(r"\btalk\s+to\s+(someone|a\s+person|sales)", re.IGNORECASE),
    re.compile(r"\bcontact\s+(you|someone|sales)", re.IGNORECASE),
]

_PRICING_RE = [
    re.compile(r"\b(what|how\s+much)\s+(is|are|does|do)\s+(the\s+)?(price|cost|pricing)", re.IGNORECASE),
    re.compile(r"\b(price|pricing|cost)\s+(for|of)", re.IGNORECASE),
    re.compile(r"\bget\s+a?\s*quote", re.IGNORECASE),
    re.compile(r"\bhow\s+much\s+(do\s+you|does\s+it|does\s+this)\s+cost", re.IGNORECASE),
    re.compile(r"\bpricing\s+(details|information|info)", re.IGNORECASE),
]

_READINESS_RE = {
    "time_sensitive": re.compile(r"\b(asap|soon|today|tomorrow|this\s+week|urgent)", re.IGNORECASE),
    "commitment_language": re.compile(
        r"\b(ready\s+to|want\s+to|looking\s+to|need\s+to)\s+(start|begin|buy|purchase|sign\s+up)",
        re.IGNORECASE,
    ),
    "comparison_shopping": re.compile(r"\b(compare|vs|versus|alternative|competitor)", re.IGNORECASE),
    "budget_aware": re.compile(r"\b(budget|afford|investment|roi)", re.IGNORECASE),
}

_LEVEL_DESCRIPTIONS = {
    IntentLevel.LOW: "Browsing/exploring",
    IntentLevel.MEDIUM: "Researching/interested",
    IntentLevel.HIGH: "Ready to engage",
}


@dataclass
class IntentDetectionResult:
    """Ephemeral scoring outcome; only ``signals`` outlives the turn."""

    level: IntentLevel
    signals: list[str]
    keywords_found: list[str] = field(default_factory=list)
    page_intent_boost: bool = False


@dataclass
class ReadinessResult:
    is_ready: bool
    indicators: list[str] = field(default_factory=list)


def find_keywords(message: str, keywords: Iterable[str]) -> list[str]:
    """Return keywords contained in the message, deduplicated, in list order."""
    normalized = message.lower()
    found: list[str] = []
    for keyword in keywords:
        kw = keyword.lower().strip()
        if kw and kw in normalized and kw not in found:
            found.append(kw)
    return found


def check_page_intent(page_url: str, custom_patterns: Sequence[str] = ()) -> bool:
    """True if the page URL matches a default or caller-supplied pattern."""
    if not page_url:
        return False
    normalized = page_url.lower()
    for pattern in (*HIGH_INTENT_PAGE_PATTERNS, *custom_patterns):
        if pattern and pattern.lower() in normalized:
            return True
    return False


def calculate_intent_level(signals: Iterable[str], page_boost: bool) -> IntentLevel:
    """Map the signal set to a level: keyword signals, +1 when page-boosted."""
    effective = sum(1 for s in set(signals) if s.startswith(KEYWORD_PREFIX))
    if page_boost:
        effective += 1

    if effective >= HIGH_INTENT_THRESHOLD:
        return IntentLevel.HIGH
    if effective >= MEDIUM_INTENT_THRESHOLD:
        return IntentLevel.MEDIUM
    return IntentLevel.LOW


def merge_signals(existing: Iterable[str], new: Iterable[str]) -> list[str]:
    """Order-preserving set union; never drops an existing signal."""
    merged: list[str] = []
    for signal in (*existing, *new):
        if signal not in merged:
            merged.append(signal)
    return merged


def detect_intent(
    message: str,
    page_url: str = "",
    existing_signals: Iterable[str] = (),
    keywords: Optional[Sequence[str]] = None,
    high_intent_pages: Sequence[str] = (),
) -> IntentDetectionResult:
    """
    Score a visitor message against keywords and page context.

    The page boost counts when the current page matches or when the signal
    set already carries ``page:high_intent`` from an earlier turn, which
    keeps the level non-decreasing as the visitor navigates away.
    """
    keyword_list = DEFAULT_INTENT_KEYWORDS if keywords is None else keywords
    keywords_found = find_keywords(message, keyword_list)
    page_boost = check_page_intent(page_url or "", high_intent_pages)

    new_signals = [f"{KEYWORD_PREFIX}{kw}" for kw in keywords_found]
    if page_boost:
        new_signals.append(PAGE_SIGNAL)

    signals = merge_signals(existing_signals, new_signals)
    level = calculate_intent_level(signals, PAGE_SIGNAL in signals)

    logger.debug(
        "Intent scored %s (keywords=%s, page_boost=%s, signals=%d)",
        level.value, keywords_found, page_boost, len(signals),
    )
    return IntentDetectionResult(
        level=level,
        signals=signals,
        keywords_found=keywords_found,
        page_intent_boost=page_boost,
    )


def is_explicit_booking_request(message: str) -> bool:
    return any(p.search(message) for p in _EXPLICIT_BOOKING_RE)


def is_pricing_request(message: str) -> bool:
    return any(p.search(message) for p in _PRICING_RE)


def analyze_readiness(message: str) -> ReadinessResult:
    """Detect purchase-readiness cues (urgency, commitment, budget...)."""
    indicators = [name for name, pattern in _READINESS_RE.items() if pattern.search(message)]
    is_ready = "commitment_language" in indicators or "time_sensitive" in indicators
    return ReadinessResult(is_ready=is_ready, indicators=indicators)


def meets_intent_trigger(level: IntentLevel, trigger: CaptureTrigger) -> bool:
    """Check the level against the configured capture trigger."""
    if trigger == "ALWAYS":
        return True
    return level.rank >= IntentLevel(trigger).rank


def is_higher_intent(new: IntentLevel, current: IntentLevel) -> bool:
    return new.rank > current.rank


def get_intent_summary(result: IntentDetectionResult) -> str:
    """Human-readable summary for lead notes and notifications."""
    summary = _LEVEL_DESCRIPTIONS[result.level]
    if result.keywords_found:
        summary += f" (keywords: {', '.join(result.keywords_found)})"
    if result.page_intent_boost:
        summary += " [high-intent page]"
    return summary
