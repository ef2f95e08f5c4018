"""Request and response models for one visitor turn."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from leadflow.schemas.action_schema import ClientAction
from leadflow.schemas.session_schema import ConversationMode, IntentLevel


class ExecutionMode(str, Enum):
    """Which decision path produced the visitor-facing reply."""

    STATE_MACHINE = "state_machine"
    AGENT = "agent"
    SHADOW = "shadow"


class TurnRequest(BaseModel):
    chatbot_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    message: str
    page_url: Optional[str] = None
    referrer_url: Optional[str] = None
    user_agent: Optional[str] = None


class TurnResponse(BaseModel):
    response: str
    mode: ConversationMode
    intent_level: IntentLevel
    client_action: ClientAction
    session_id: str
    sources: list[str] = Field(default_factory=list)
    lead_id: Optional[str] = None
    execution_mode: ExecutionMode = ExecutionMode.STATE_MACHINE
