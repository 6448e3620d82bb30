"""Context builder for assembling agent prompts."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger

from wa_agent.session.store import Turn, UserProfile


def resolve_timezone(name: str | None, default: str = "UTC") -> ZoneInfo:
    """Resolve an IANA name, falling back to the default (then UTC) when unknown."""
    for candidate in (name, default, "UTC"):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug(f"Unknown timezone {candidate!r}")
    return ZoneInfo("UTC")


class ContextBuilder:
    """
    Builds the context (system prompt + messages) for the agent.

    Assembles identity, current time, known profile facts and the recent
    conversation history into the working transcript for one message.
    """

    def __init__(self, assistant_name: str = "Asistente", default_timezone: str = "UTC"):
        self.assistant_name = assistant_name
        self.default_timezone = default_timezone

    def timezone_for(self, profile: UserProfile | None) -> str:
        tz = resolve_timezone(profile.timezone if profile else None, self.default_timezone)
        return tz.key

    def build_system_prompt(
        self,
        profile: UserProfile | None = None,
        now: datetime | None = None,
    ) -> str:
        """
        Build the system prompt.

        Args:
            profile: Stored profile facts, if any.
            now: Override for the current time (UTC) used in the prompt.

        Returns:
            Complete system prompt.
        """
        tz = resolve_timezone(profile.timezone if profile else None, self.default_timezone)
        current = (now or datetime.now(timezone.utc)).astimezone(tz)
        facts = profile.facts() if profile else {}

        def fact(key: str) -> str:
            value = facts.get(key)
            return value if value else "unknown"

        return f"""# {self.assistant_name}

You are {self.assistant_name}, a personal assistant that talks to the user over WhatsApp.

You can use tools to:
- Read, create and reschedule events in the user's Google Calendar
- Search, read, send, draft, archive or trash the user's emails
- Save and read durable facts about the user

## Operating Rules
- Reply in the user's language, briefly, in plain text suitable for WhatsApp.
- Resolve relative dates ("tomorrow", "next Monday") against the current time below and use RFC3339 datetimes with offsets in tool calls.
- Use event and message ids from earlier tool results; never invent ids.
- Confirm recipient and content before calling send_email unless the user already confirmed.
- When the user shares a durable fact about themselves, call save_user_fact.
- If a tool fails, explain the failure plainly and suggest the next step.

## Current Time
{current.strftime("%Y-%m-%d %H:%M (%A)")} {tz.key}

## Known User Facts
- Name: {fact("name")}
- Preferences: {fact("preferences")}
- Timezone: {fact("timezone")}
- Notes: {fact("notes")}"""

    def build_messages(
        self,
        system_prompt: str,
        history: list[Turn],
        current_message: str,
    ) -> list[dict[str, Any]]:
        """
        Build the complete message list for an LLM call.

        Args:
            system_prompt: Output of build_system_prompt.
            history: Persisted turns, oldest first.
            current_message: The new user message.

        Returns:
            List of messages including system prompt.
        """
        messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        # Tool turns are only valid next to the assistant call that produced them.
        messages.extend(turn.to_message() for turn in history if turn.role != "tool")
        messages.append({"role": "user", "content": current_message})
        return messages

    def add_tool_result(
        self,
        messages: list[dict[str, Any]],
        tool_call_id: str,
        tool_name: str,
        result: str,
    ) -> list[dict[str, Any]]:
        """
        Add a tool result to the message list.

        Args:
            messages: Current message list.
            tool_call_id: ID of the tool call.
            tool_name: Name of the tool.
            result: Serialized tool result.

        Returns:
            Updated message list.
        """
        messages.append({
            "role": "tool",
            "tool_call_id": tool_call_id,
            "name": tool_name,
            "content": result,
        })
        return messages

    def add_assistant_message(
        self,
        messages: list[dict[str, Any]],
        content: str | None,
        tool_calls: list[dict[str, Any]] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Add an assistant message to the message list.

        Args:
            messages: Current message list.
            content: Message content.
            tool_calls: Optional tool calls.

        Returns:
            Updated message list.
        """
        msg: dict[str, Any] = {"role": "assistant", "content": content or ""}

        if tool_calls:
            msg["tool_calls"] = tool_calls

        messages.append(msg)
        return messages
