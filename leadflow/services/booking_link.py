"""Prefilled scheduling links (Calendly / Cal.com query parameters)."""

from typing import Optional
from urllib.parse import urlencode, urlparse

from leadflow.schemas.session_schema import Lead

SCHEDULING_HOSTS = ("calendly.com", "cal.com")


def build_booking_link(base_url: str, lead: Optional[Lead] = None) -> str:
    """
    Append the visitor's details to a scheduling URL.

    ``name`` and ``email`` prefill the booking form; the reason for interest
    goes in ``a1`` (the first custom question).
    """
    clean = base_url.strip().rstrip("/")
    if lead is None:
        return clean

    params = []
    if lead.name:
        params.append(("name", lead.name))
    if lead.email:
        params.append(("email", lead.email))
    if lead.reason_for_interest:
        params.append(("a1", lead.reason_for_interest))
    if not params:
        return clean
    return f"{clean}?{urlencode(params)}"


def is_valid_scheduling_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https"):
        return False
    host = (parsed.hostname or "").lower()
    return any(host == h or host.endswith("." + h) for h in SCHEDULING_HOSTS)


def extract_event_type(url: str) -> Optional[str]:
    """``https://calendly.com/acme/30min`` -> ``30min``."""
    parts = [p for p in urlparse(url).path.split("/") if p]
    return parts[-1] if len(parts) >= 2 else None
