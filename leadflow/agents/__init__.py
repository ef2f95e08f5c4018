from leadflow.agents.tool_agent import AgentPath, ToolAgent
from leadflow.agents.tools import ToolContext
from leadflow.agents.registry import get_registered_tools, get_tool, register_tool

__all__ = [
    "AgentPath", "ToolAgent", "ToolContext",
    "register_tool", "get_tool", "get_registered_tools",
]
