"""
Tool registry for the agent path.

Tools are registered by name so the agent resolves them at call time
instead of importing each function directly, and callers can swap a tool
(a CRM-backed capture_lead, say) without touching the agent.
"""

import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

ToolFunc = Callable[..., Awaitable[str]]

_TOOL_REGISTRY: dict[str, ToolFunc] = {}


def register_tool(name: str, func: ToolFunc) -> None:
    """Register a tool coroutine by name, replacing any previous one."""
    _TOOL_REGISTRY[name] = func
    logger.debug("Tool registered: %s", name)


def get_tool(name: str) -> ToolFunc:
    """Look up a tool by registered name.

    Raises:
        KeyError: If the tool name is not registered.
    """
    if name not in _TOOL_REGISTRY:
        registered = list(_TOOL_REGISTRY.keys())
        raise KeyError(f"Tool '{name}' not registered. Available: {registered}")
    return _TOOL_REGISTRY[name]


def get_registered_tools() -> list[str]:
    """Return names of all registered tools."""
    return list(_TOOL_REGISTRY.keys())


def _auto_register() -> None:
    """Register the built-in tools. Called once at import time."""
    from leadflow.agents import tools

    register_tool("analyze_intent", tools.analyze_intent)
    register_tool("answer_question", tools.answer_question)
    register_tool("capture_lead", tools.capture_lead)
    register_tool("ask_qualification", tools.ask_qualification)
    register_tool("offer_booking", tools.offer_booking)


_auto_register()
