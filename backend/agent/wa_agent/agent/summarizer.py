"""Compact projections of tool results before they go back to the model."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

from wa_agent.agent.tools.base import is_error_result
from wa_agent.agent.tools.google_workspace import message_headers
from wa_agent.utils.helpers import truncate_text

SNIPPET_CHARS = 200
BODY_CHARS = 2000
GENERIC_STRING_CHARS = 2000
GENERIC_LIST_ITEMS = 20
GENERIC_MAX_DEPTH = 4

Projection = Callable[[dict[str, Any]], dict[str, Any]]


def _when(value: Any) -> str | None:
    """Calendar start/end as a plain string (dateTime, or date for all-day events)."""
    if isinstance(value, dict):
        return value.get("dateTime") or value.get("date")
    if value is None:
        return None
    return str(value)


def _with_status(raw: dict[str, Any], projected: dict[str, Any]) -> dict[str, Any]:
    if "status" in raw:
        return {"status": raw["status"], **projected}
    return projected


def _event(item: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": item.get("id"),
        "title": item.get("title") or item.get("summary") or "(no title)",
        "start": _when(item.get("start")),
        "end": _when(item.get("end")),
    }


def _calendar_list(raw: dict[str, Any]) -> dict[str, Any]:
    source = raw.get("items") if "items" in raw else raw.get("events")
    events = [_event(item) for item in source or [] if isinstance(item, dict)]
    return _with_status(raw, {"events": events, "count": len(events)})


def _calendar_event(raw: dict[str, Any]) -> dict[str, Any]:
    return _with_status(raw, _event(raw))


def _header(message: dict[str, Any], key: str) -> str:
    if key in message:
        return str(message.get(key) or "")
    return message_headers(message).get(key, "")


def _email_summary(message: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": message.get("id"),
        "threadId": message.get("threadId"),
        "from": _header(message, "from"),
        "subject": _header(message, "subject"),
        "date": _header(message, "date"),
        "snippet": truncate_text(message.get("snippet", ""), SNIPPET_CHARS),
    }


def _email_search(raw: dict[str, Any]) -> dict[str, Any]:
    messages = [_email_summary(m) for m in raw.get("messages", []) or [] if isinstance(m, dict)]
    return _with_status(raw, {"messages": messages, "count": len(messages)})


def _email_details(raw: dict[str, Any]) -> dict[str, Any]:
    return _with_status(
        raw,
        {
            "id": raw.get("id"),
            "threadId": raw.get("threadId"),
            "from": _header(raw, "from"),
            "to": _header(raw, "to"),
            "subject": _header(raw, "subject"),
            "date": _header(raw, "date"),
            "body": truncate_text(raw.get("body") or raw.get("snippet") or "", BODY_CHARS),
        },
    )


def _pick(*keys: str) -> Projection:
    def project(raw: dict[str, Any]) -> dict[str, Any]:
        return {key: raw[key] for key in keys if key in raw}

    return project


def _generic(value: Any, depth: int = 0) -> Any:
    if isinstance(value, str):
        return truncate_text(value, GENERIC_STRING_CHARS)
    if isinstance(value, (dict, list)) and depth >= GENERIC_MAX_DEPTH:
        return truncate_text(json.dumps(value, ensure_ascii=False, default=str), GENERIC_STRING_CHARS)
    if isinstance(value, dict):
        return {str(k): _generic(v, depth + 1) for k, v in value.items()}
    if isinstance(value, list):
        return [_generic(v, depth + 1) for v in value[:GENERIC_LIST_ITEMS]]
    if value is None or isinstance(value, (bool, int, float)):
        return value
    return truncate_text(str(value), GENERIC_STRING_CHARS)


class ResultSummarizer:
    """
    Reduce raw tool results to the fields the model needs.

    Projections are pure functions of their input, so summarizing an already
    summarized result returns it unchanged. Ids needed by follow-up calls
    (event ids, message ids) are always kept. Error results pass through.
    """

    def __init__(self, projections: dict[str, Projection] | None = None):
        self._projections: dict[str, Projection] = {
            "get_calendar_events": _calendar_list,
            "create_calendar_event": _calendar_event,
            "update_calendar_event": _calendar_event,
            "search_emails": _email_search,
            "get_email_details": _email_details,
            "send_email": _pick("status", "id", "threadId", "to", "subject"),
            "create_draft": _pick("status", "id", "messageId", "to", "subject"),
            "modify_email_status": _pick("status", "action", "id", "labelIds"),
        }
        if projections:
            self._projections.update(projections)

    def register(self, tool_name: str, projection: Projection) -> None:
        self._projections[tool_name] = projection

    def summarize(self, tool_name: str, raw: Any) -> dict[str, Any]:
        if not isinstance(raw, dict):
            return {"status": "ok", "result": _generic(raw, 1)}
        if is_error_result(raw):
            return {"status": "error", "error": True, "message": truncate_text(raw.get("message", ""), BODY_CHARS)}
        if set(raw) == {"status", "result"} and raw.get("status") == "ok":
            # Wrapped non-dict output from an earlier pass
            return {"status": "ok", "result": _generic(raw["result"], 1)}
        projection = self._projections.get(tool_name)
        if projection is None:
            return _generic(raw)
        return projection(raw)
