"""Turn correlation ID logging context.

Provides a turn-aware logger that attaches a correlation ID to every
log message, so a single visitor turn can be traced through the state
machine, the shadow comparator and the notification sinks.

Usage:
    from leadflow.logging_context import get_turn_logger, set_turn_id

    set_turn_id("bot-1:visitor-abc")
    logger = get_turn_logger(__name__)
    logger.info("Processing turn")  # record.turn_id == "bot-1:visitor-abc"
"""

import logging
from contextvars import ContextVar

_turn_id: ContextVar[str] = ContextVar("turn_id", default="NO_TURN_ID")


def set_turn_id(turn_id: str) -> None:
    """Set the correlation ID for the current async context."""
    _turn_id.set(turn_id)


def get_turn_id() -> str:
    """Retrieve the current correlation ID."""
    return _turn_id.get()


def make_turn_id(chatbot_id: str, session_id: str) -> str:
    return f"{chatbot_id}:{session_id}"


class TurnIdFilter(logging.Filter):
    """Injects turn_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.turn_id = _turn_id.get()  # type: ignore[attr-defined]
        return True


def get_turn_logger(name: str) -> logging.Logger:
    """Return a logger with the TurnIdFilter attached.

    The filter adds ``turn_id`` to each record so formatters can
    include ``%(turn_id)s`` in their format string.
    """
    logger = logging.getLogger(name)
    if not any(isinstance(f, TurnIdFilter) for f in logger.filters):
        logger.addFilter(TurnIdFilter())
    return logger
