"""Cohort assignment, shadow comparison, and agent path result models."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from leadflow.schemas.action_schema import ClientAction, StateTransitionResult
from leadflow.schemas.session_schema import ConversationMode, IntentLevel, new_id, utcnow


class Cohort(str, Enum):
    AGENT = "agent"
    STATE_MACHINE = "state_machine"


class CohortAssignment(BaseModel):
    chatbot_id: str
    cohort: Cohort
    is_manual: bool = False
    assigned_at: datetime = Field(default_factory=utcnow)


class ToolCallRecord(BaseModel):
    tool_name: str
    tool_input: dict = Field(default_factory=dict)
    output: str = ""
    duration_ms: float = 0.0
    success: bool = True


class AgentResponse(BaseModel):
    """Result of one turn through the agent decision path."""

    response: str
    sources: list[str] = Field(default_factory=list)
    conversation_mode: ConversationMode
    intent_level: Optional[IntentLevel] = None
    actions: list[ClientAction] = Field(default_factory=list)
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)
    agent_used: bool = True
    fallback_used: bool = False
    error: Optional[str] = None
    # session changes decided by the tools, applied like a state machine result
    transition: Optional[StateTransitionResult] = None

    @property
    def tool_calls_count(self) -> int:
        return len(self.tool_calls)


class ShadowComparison(BaseModel):
    """Write-once record of both decision paths for one turn."""

    model_config = {"frozen": True}

    id: str = Field(default_factory=new_id)
    chatbot_id: str
    session_id: str
    user_message: str

    state_machine_response: str
    state_machine_mode: ConversationMode
    state_machine_intent_level: Optional[IntentLevel] = None
    state_machine_execution_time_ms: float = 0.0

    agent_response: str = ""
    agent_mode: Optional[ConversationMode] = None
    agent_intent_level: Optional[IntentLevel] = None
    agent_tool_calls: list[str] = Field(default_factory=list)
    agent_execution_time_ms: float = 0.0
    agent_fallback_used: bool = False
    agent_error: Optional[str] = None

    response_similarity: float = Field(ge=0.0, le=1.0)
    mode_matches: bool
    intent_matches: bool
    decision_alignment_score: int = Field(ge=0, le=100)

    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def agent_tools_count(self) -> int:
        return len(self.agent_tool_calls)


class ComparisonStats(BaseModel):
    total_comparisons: int = 0
    mode_match_rate: float = 0.0
    avg_alignment_score: float = 0.0
    avg_agent_time_ms: float = 0.0
    avg_state_machine_time_ms: float = 0.0
    agent_error_rate: float = 0.0
    most_used_tools: list[tuple[str, int]] = Field(default_factory=list)


class CohortStats(BaseModel):
    total_chatbots: int = 0
    agent_cohort_count: int = 0
    state_machine_cohort_count: int = 0
    agent_percentage: float = 0.0
    manual_assignments: int = 0
