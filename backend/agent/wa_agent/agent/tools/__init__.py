"""Agent tools module."""

from wa_agent.agent.tools.base import Tool, ToolContext, error_result, is_error_result
from wa_agent.agent.tools.registry import ToolRegistry

__all__ = ["Tool", "ToolContext", "ToolRegistry", "error_result", "is_error_result"]
