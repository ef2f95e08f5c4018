"""Side-effect actions and widget actions produced by a turn.

Both unions are closed: every consumer dispatches on the concrete class
and raises on anything it does not know, so a new action kind cannot be
silently ignored.
"""

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from leadflow.schemas.session_schema import (
    BookingStatus,
    ConversationMode,
    IntentLevel,
    LeadCaptureStep,
    LeadData,
    QualificationQuestion,
)


class NotificationType(str, Enum):
    NEW_LEAD = "NEW_LEAD"
    BOOKING_SCHEDULED = "BOOKING_SCHEDULED"
    HIGH_INTENT_VISITOR = "HIGH_INTENT_VISITOR"


class CaptureLead(BaseModel):
    type: Literal["CAPTURE_LEAD"] = "CAPTURE_LEAD"
    data: LeadData


class UpdateIntent(BaseModel):
    type: Literal["UPDATE_INTENT"] = "UPDATE_INTENT"
    level: IntentLevel
    signals: list[str]


class SaveQualification(BaseModel):
    type: Literal["SAVE_QUALIFICATION"] = "SAVE_QUALIFICATION"
    question_id: str
    answer: str


class ShowBooking(BaseModel):
    type: Literal["SHOW_BOOKING"] = "SHOW_BOOKING"
    booking_link: str
    cta_text: str


class SendNotification(BaseModel):
    type: Literal["SEND_NOTIFICATION"] = "SEND_NOTIFICATION"
    notification_type: NotificationType


StateAction = Annotated[
    Union[CaptureLead, UpdateIntent, SaveQualification, ShowBooking, SendNotification],
    Field(discriminator="type"),
]


class ClientActionType(str, Enum):
    SHOW_EMAIL_INPUT = "SHOW_EMAIL_INPUT"
    SHOW_NAME_INPUT = "SHOW_NAME_INPUT"
    SHOW_REASON_INPUT = "SHOW_REASON_INPUT"
    SHOW_QUALIFICATION = "SHOW_QUALIFICATION"
    SHOW_BOOKING_LINK = "SHOW_BOOKING_LINK"
    CONVERSATION_CLOSED = "CONVERSATION_CLOSED"
    NONE = "NONE"


class ClientAction(BaseModel):
    """Instruction for the embedded widget (input field, booking button...)."""

    type: ClientActionType = ClientActionType.NONE
    prompt: Optional[str] = None
    question: Optional[QualificationQuestion] = None
    url: Optional[str] = None
    cta_text: Optional[str] = None
    message: Optional[str] = None


class StateTransitionResult(BaseModel):
    """Everything one turn decided, applied by the caller in a single write."""

    next_mode: ConversationMode
    response: str
    actions: list[StateAction] = Field(default_factory=list)
    should_capture_lead: bool = False
    should_offer_booking: bool = False
    intent_level: IntentLevel = IntentLevel.LOW
    lead_capture_step: Optional[LeadCaptureStep] = None
    capture_attempts: int = 0
    qualification_step: int = 0
    booking_status: Optional[BookingStatus] = None
    sources: list[str] = Field(default_factory=list)
    retrieval_failed: bool = False

    def actions_of(self, kind: type) -> list:
        return [a for a in self.actions if isinstance(a, kind)]
