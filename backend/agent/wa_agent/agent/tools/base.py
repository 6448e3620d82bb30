"""Base class for agent tools."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ToolContext:
    """Per-message context handed to every tool call."""

    user_id: str
    timezone: str = "UTC"


def error_result(message: str, **extra: Any) -> dict[str, Any]:
    """Build the single error shape every tool returns on failure."""
    payload: dict[str, Any] = {"status": "error", "error": True, "message": str(message)}
    payload.update(extra)
    return payload


def is_error_result(result: Any) -> bool:
    if not isinstance(result, dict):
        return False
    return result.get("error") is True or result.get("status") == "error"


class Tool(ABC):
    """
    Abstract base class for agent tools.

    Tools are capabilities the model can invoke. Results must be
    JSON-serializable dicts; failures are reported with `error_result`
    instead of raising.
    """

    _TYPE_MAP = {
        "string": str,
        "integer": int,
        "number": (int, float),
        "boolean": bool,
        "array": list,
        "object": dict,
    }

    @property
    @abstractmethod
    def name(self) -> str:
        """Tool name used in function calls."""

    @property
    @abstractmethod
    def description(self) -> str:
        """Description of what the tool does."""

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON Schema for tool parameters."""

    @abstractmethod
    async def execute(self, ctx: ToolContext, **kwargs: Any) -> dict[str, Any]:
        """
        Execute the tool with given parameters.

        Args:
            ctx: Caller context (user id, timezone).
            **kwargs: Tool-specific parameters.

        Returns:
            JSON-serializable result dict.
        """

    def validate_params(self, params: dict[str, Any]) -> list[str]:
        """Validate params against the JSON schema; return error strings (empty if valid)."""
        schema = self.parameters or {}
        if schema.get("type", "object") != "object":
            raise ValueError(f"Schema must be object type, got {schema.get('type')!r}")
        return self._validate(params, {**schema, "type": "object"}, "")

    def _validate(self, value: Any, schema: dict[str, Any], path: str) -> list[str]:
        expected, label = schema.get("type"), path or "parameter"
        py_type = self._TYPE_MAP.get(expected) if expected else None
        if py_type is not None:
            # bool is an int subclass; reject it for numeric fields
            if expected in {"integer", "number"} and isinstance(value, bool):
                return [f"{label} should be {expected}"]
            if not isinstance(value, py_type):
                return [f"{label} should be {expected}"]

        errors: list[str] = []
        if "enum" in schema and value not in schema["enum"]:
            errors.append(f"{label} must be one of {schema['enum']}")
        if expected == "object":
            props = schema.get("properties", {})
            for key in schema.get("required", []):
                if key not in value or value[key] in (None, ""):
                    errors.append(f"missing required {path + '.' + key if path else key}")
            for key, item in value.items():
                if key in props:
                    errors.extend(self._validate(item, props[key], path + "." + key if path else key))
        if expected == "array" and "items" in schema:
            for index, item in enumerate(value):
                errors.extend(self._validate(item, schema["items"], f"{label}[{index}]"))
        return errors

    def to_schema(self) -> dict[str, Any]:
        """Convert tool to OpenAI function schema format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }
