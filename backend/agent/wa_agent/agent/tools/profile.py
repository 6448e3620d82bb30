"""Profile fact tools backed by the profile store."""

from __future__ import annotations

from typing import Any

from wa_agent.agent.tools.base import Tool, ToolContext, error_result
from wa_agent.session.store import PROFILE_FIELDS, ProfileStore


class SaveUserFactTool(Tool):
    """Persist durable facts about the user."""

    name = "save_user_fact"
    description = (
        "Save durable facts about the user (name, preferences, timezone, notes). "
        "Only the fields you pass are changed; omitted fields keep their stored value."
    )
    parameters = {
        "type": "object",
        "properties": {
            "name": {"type": "string", "description": "How the user wants to be called"},
            "preferences": {"type": "string", "description": "Free-text preferences"},
            "timezone": {"type": "string", "description": "IANA timezone, e.g. Europe/Madrid"},
            "notes": {"type": "string", "description": "Other durable facts"},
        },
        "required": [],
    }

    def __init__(self, profiles: ProfileStore):
        self.profiles = profiles

    async def execute(self, ctx: ToolContext, **kwargs: Any) -> dict[str, Any]:
        fields = {
            key: str(value).strip()
            for key, value in kwargs.items()
            if key in PROFILE_FIELDS and value is not None and str(value).strip()
        }
        if not fields:
            return error_result(f"Provide at least one of: {', '.join(PROFILE_FIELDS)}.")
        profile = await self.profiles.upsert(ctx.user_id, **fields)
        return {"status": "saved", "saved": sorted(fields), "profile": profile.facts()}


class GetUserFactTool(Tool):
    """Read one stored profile field."""

    name = "get_user_fact"
    description = "Read a stored fact about the user by field name."
    parameters = {
        "type": "object",
        "properties": {
            "fieldName": {"type": "string", "enum": list(PROFILE_FIELDS)},
        },
        "required": ["fieldName"],
    }

    def __init__(self, profiles: ProfileStore):
        self.profiles = profiles

    async def execute(self, ctx: ToolContext, fieldName: str | None = None, **kwargs: Any) -> dict[str, Any]:
        field_name = (fieldName or "").strip()
        if field_name not in PROFILE_FIELDS:
            return error_result(f"fieldName must be one of {', '.join(PROFILE_FIELDS)}.")
        profile = await self.profiles.get(ctx.user_id)
        value = getattr(profile, field_name) if profile else None
        return {"status": "ok", "field": field_name, "value": value, "known": value is not None}
