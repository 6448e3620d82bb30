"""Tool registry for dynamic tool management."""

from __future__ import annotations

from typing import Any

from loguru import logger

from wa_agent.agent.tools.base import Tool, ToolContext, error_result


class ToolRegistry:
    """
    Registry for agent tools.

    Maps a tool name to its handler and schema, and dispatches calls.
    `execute` never raises: unknown names, invalid parameters and handler
    exceptions all come back as error results.
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool, replacing any tool with the same name."""
        if tool.name in self._tools:
            logger.debug(f"Replacing registered tool: {tool.name}")
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        """Unregister a tool by name."""
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def resolve(self, name: str) -> Tool | None:
        """Resolve a model-supplied name (tolerates surrounding whitespace)."""
        return self._tools.get((name or "").strip())

    def has(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions in OpenAI format."""
        return [tool.to_schema() for tool in self._tools.values()]

    async def execute(self, name: str, params: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
        """
        Execute a tool by name with given parameters.

        Args:
            name: Tool name.
            params: Tool parameters.
            ctx: Per-message caller context.

        Returns:
            Tool result dict, or an error result.
        """
        tool = self.resolve(name)
        if not tool:
            return error_result(f"Unknown tool: {name}")

        if not isinstance(params, dict):
            params = {}

        try:
            errors = tool.validate_params(params)
            if errors:
                return error_result(f"Invalid parameters for tool '{name}': " + "; ".join(errors))
            result = await tool.execute(ctx, **params)
        except Exception as e:
            logger.warning(f"Tool {name} raised: {e}")
            return error_result(f"Error executing {name}: {str(e)}")

        if not isinstance(result, dict):
            return {"status": "ok", "result": result}
        return result

    @property
    def tool_names(self) -> list[str]:
        """Get list of registered tool names."""
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
