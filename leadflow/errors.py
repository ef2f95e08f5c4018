"""Error taxonomy for the conversation core."""

from typing import Any, Optional


class LeadflowError(Exception):
    """Base class for all errors raised by the conversation core."""


class RetrievalError(LeadflowError):
    """The answer provider was unreachable, failed, or timed out."""


class ValidationError(LeadflowError):
    """Visitor input did not pass validation for the current capture step."""


class StorageError(LeadflowError):
    """Session, lead, or cohort persistence failed."""


class ComparisonError(LeadflowError):
    """The shadow agent path failed for a turn."""


class InvalidTransitionError(LeadflowError):
    """Raised when a mode change is not listed in the transition table."""


class TurnPersistenceError(StorageError):
    """Saving a turn failed after the transition result was computed.

    The result is kept so the caller can retry the save without
    re-running the turn (and re-calling the answer provider).
    """

    def __init__(self, message: str, result: Optional[Any] = None) -> None:
        super().__init__(message)
        self.result = result
