"""Conversation session, lead, and per-turn lead capture config models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class ConversationMode(str, Enum):
    """Dialogue states of the lead capture state machine."""

    INFO = "INFO"
    INTENT_CHECK = "INTENT_CHECK"
    LEAD_CAPTURE = "LEAD_CAPTURE"
    QUALIFICATION = "QUALIFICATION"
    BOOKING = "BOOKING"
    CLOSURE = "CLOSURE"


class IntentLevel(str, Enum):
    """Coarse visitor-readiness classification, ordered LOW < MEDIUM < HIGH."""

    LOW = "LOW_INTENT"
    MEDIUM = "MEDIUM_INTENT"
    HIGH = "HIGH_INTENT"

    @property
    def rank(self) -> int:
        return _INTENT_ORDER.index(self)


_INTENT_ORDER = [IntentLevel.LOW, IntentLevel.MEDIUM, IntentLevel.HIGH]


class LeadCaptureStep(str, Enum):
    ASK_EMAIL = "ASK_EMAIL"
    ASK_NAME = "ASK_NAME"
    ASK_REASON = "ASK_REASON"
    COMPLETED = "COMPLETED"


class BookingStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    LINK_SHARED = "LINK_SHARED"
    COMPLETED = "COMPLETED"
    DECLINED = "DECLINED"


class LeadBookingStatus(str, Enum):
    NOT_BOOKED = "NOT_BOOKED"
    LINK_SHARED = "LINK_SHARED"
    BOOKED = "BOOKED"
    DECLINED = "DECLINED"


CaptureTrigger = Literal["ALWAYS", "LOW_INTENT", "MEDIUM_INTENT", "HIGH_INTENT"]


class SessionMessage(BaseModel):
    """One entry of the bounded per-session message history."""

    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime = Field(default_factory=utcnow)


class SessionContext(BaseModel):
    """Request metadata captured when a session is loaded or created."""

    page_url: Optional[str] = None
    referrer_url: Optional[str] = None
    user_agent: Optional[str] = None


class ConversationSession(BaseModel):
    """
    One conversation per (chatbot_id, session_id) key.

    ``id`` identifies this incarnation of the session: an expired session is
    closed and replaced by a new row with a fresh ``id`` under the same key.
    A session with ``closed_at`` set is terminal. ``version`` counts saves and
    guards against stale writes.
    """

    id: str = Field(default_factory=new_id)
    chatbot_id: str
    session_id: str
    mode: ConversationMode = ConversationMode.INFO
    intent_level: IntentLevel = IntentLevel.LOW
    intent_signals: list[str] = Field(default_factory=list)
    lead_capture_step: Optional[LeadCaptureStep] = None
    capture_attempts: int = 0
    qualification_step: int = Field(default=0, ge=0)
    qualification_answers: dict[str, str] = Field(default_factory=dict)
    page_url: Optional[str] = None
    referrer_url: Optional[str] = None
    user_agent: Optional[str] = None
    message_history: list[SessionMessage] = Field(default_factory=list)
    message_count: int = Field(default=0, ge=0)
    lead_id: Optional[str] = None
    booking_status: BookingStatus = BookingStatus.NOT_STARTED
    booking_link_clicked_at: Optional[datetime] = None
    started_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)
    closed_at: Optional[datetime] = None
    version: int = Field(default=0, ge=0)

    @property
    def is_closed(self) -> bool:
        return self.closed_at is not None

    @property
    def key(self) -> tuple[str, str]:
        return (self.chatbot_id, self.session_id)


class QualificationQuestion(BaseModel):
    id: str
    question: str
    required: bool = False


class LeadCaptureConfig(BaseModel):
    """Per-turn snapshot of the chatbot's lead capture settings.

    Owned by the caller and re-read every turn; the core never persists it.
    """

    model_config = {"frozen": True}

    lead_capture_enabled: bool = True
    lead_capture_trigger: CaptureTrigger = "MEDIUM_INTENT"
    require_name: bool = True
    require_reason: bool = False
    booking_enabled: bool = False
    booking_link: Optional[str] = None
    booking_cta_text: str = "Book a call"
    notify_on_lead: bool = True
    notify_on_booking: bool = True
    intent_keywords: Optional[list[str]] = None
    high_intent_pages: list[str] = Field(default_factory=list)
    qualification_enabled: bool = False
    qualification_questions: list[QualificationQuestion] = Field(default_factory=list)
    closure_message: str = ""
    booking_confirmation_message: str = ""
    response_tone: Optional[str] = None
    response_length: Optional[str] = None
    language: Optional[str] = None

    @property
    def active_questions(self) -> list[QualificationQuestion]:
        """Questions to ask, empty when qualification is switched off."""
        if not self.qualification_enabled:
            return []
        return list(self.qualification_questions)

    @property
    def can_offer_booking(self) -> bool:
        return self.booking_enabled and bool(self.booking_link)

    def style_hints(self) -> dict[str, Optional[str]]:
        return {
            "tone": self.response_tone,
            "length": self.response_length,
            "language": self.language,
        }


class Lead(BaseModel):
    """A captured visitor contact record."""

    id: str = Field(default_factory=new_id)
    chatbot_id: str
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    reason_for_interest: Optional[str] = None
    page_url: Optional[str] = None
    referrer_url: Optional[str] = None
    intent_level: Optional[IntentLevel] = None
    qualification_answers: dict[str, str] = Field(default_factory=dict)
    questions_asked: list[str] = Field(default_factory=list)
    message_count: int = 0
    conversation_summary: Optional[str] = None
    booking_status: LeadBookingStatus = LeadBookingStatus.NOT_BOOKED
    owner_notified: bool = False
    notification_sent_at: Optional[datetime] = None
    source_session_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class LeadData(BaseModel):
    """Partial lead fields collected during one capture step."""

    email: Optional[str] = None
    name: Optional[str] = None
    reason_for_interest: Optional[str] = None

    def merged(self, other: "LeadData") -> "LeadData":
        updates = other.model_dump(exclude_none=True)
        return self.model_copy(update=updates)
