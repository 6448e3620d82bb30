"""Google Calendar and Gmail tools via REST API."""

from __future__ import annotations

import asyncio
import base64
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from typing import Any
from urllib.parse import quote

import httpx
from loguru import logger

from wa_agent.agent.tools.base import Tool, ToolContext, error_result

CALENDAR_API = "https://www.googleapis.com/calendar/v3"
GMAIL_API = "https://gmail.googleapis.com/gmail/v1/users/me"
TOKEN_URL = "https://oauth2.googleapis.com/token"

EMAIL_ACTIONS = ("archive", "trash", "mark_as_read", "mark_as_unread")


@dataclass(frozen=True)
class GoogleCredentials:
    """OAuth material for one Google account, supplied at construction time."""

    client_id: str = ""
    client_secret: str = ""
    refresh_token: str = ""
    access_token: str = ""
    calendar_id: str = "primary"

    @classmethod
    def from_config(cls, config: Any) -> GoogleCredentials:
        return cls(
            client_id=config.client_id,
            client_secret=config.client_secret,
            refresh_token=config.refresh_token,
            access_token=config.access_token,
            calendar_id=config.calendar_id or "primary",
        )


def _extract_google_error_reason(payload: dict[str, Any]) -> tuple[str, str, list[str]]:
    """Extract message/status/reasons from Google error payload."""
    error_obj = payload.get("error")
    if isinstance(error_obj, str):
        return error_obj.strip(), "", []
    if not isinstance(error_obj, dict):
        return "", "", []

    message = str(error_obj.get("message", "")).strip()
    status = str(error_obj.get("status", "")).strip()
    reasons: list[str] = []
    details = error_obj.get("details", []) or error_obj.get("errors", [])
    if isinstance(details, list):
        for item in details:
            if not isinstance(item, dict):
                continue
            reason = str(item.get("reason", "")).strip()
            if reason:
                reasons.append(reason)
    return message, status, reasons


def _is_scope_error(status_code: int, payload: dict[str, Any]) -> bool:
    """Return True when Google response indicates OAuth scope mismatch."""
    if status_code != 403:
        return False
    message, status, reasons = _extract_google_error_reason(payload)
    combined = " ".join([message, status, *reasons]).lower()
    scope_markers = [
        "access_token_scope_insufficient",
        "insufficient authentication scopes",
        "insufficientpermissions",
    ]
    if any(marker in combined for marker in scope_markers):
        return True
    return "scope" in combined and "insufficient" in combined


def _format_refresh_error(response: httpx.Response) -> str:
    """Build actionable token refresh error message."""
    payload: dict[str, Any] = {}
    try:
        parsed = response.json()
        if isinstance(parsed, dict):
            payload = parsed
    except (json.JSONDecodeError, ValueError):
        payload = {}

    error = str(payload.get("error", "")).strip().lower()
    description = str(payload.get("error_description", "")).strip()
    if error == "invalid_grant":
        return (
            "Token refresh failed: refresh token expired or revoked (invalid_grant). "
            "Issue a new refresh token and set google.refreshToken in the config."
        )

    detail = description or str(payload.get("error", "")).strip()
    if detail:
        return f"Token refresh failed (HTTP {response.status_code}): {detail}"
    return f"Token refresh failed (HTTP {response.status_code})"


def _format_google_api_error(status_code: int, payload: dict[str, Any]) -> str:
    """Build readable error text from Google API payload."""
    if _is_scope_error(status_code, payload):
        return (
            "Google API scope mismatch (insufficient scopes). "
            "The refresh token needs calendar and gmail.modify/gmail.send scopes."
        )

    message, _, _ = _extract_google_error_reason(payload)
    if message:
        return f"Google API error (HTTP {status_code}): {message}"

    raw_error = payload.get("error")
    if isinstance(raw_error, str) and raw_error.strip():
        return f"Google API error (HTTP {status_code}): {raw_error.strip()}"
    return f"HTTP {status_code}"


class GoogleWorkspaceClient:
    """Minimal Google REST client with token refresh."""

    def __init__(self, credentials: GoogleCredentials, timeout: float = 20.0):
        self.credentials = credentials
        self.calendar_id = credentials.calendar_id or "primary"
        self.timeout = timeout

        self._cached_token = credentials.access_token
        self._refresh_lock = asyncio.Lock()
        if self._can_refresh():
            # A configured access token may be stale; refresh on first use.
            self._token_expiry: datetime | None = datetime.now(timezone.utc)
        elif credentials.access_token:
            self._token_expiry = datetime.now(timezone.utc) + timedelta(minutes=10)
        else:
            self._token_expiry = None

    def is_configured(self) -> bool:
        """Return True if at least one workable auth path exists."""
        if self._cached_token:
            return True
        return self._can_refresh()

    def _can_refresh(self) -> bool:
        """Return True when refresh token credentials are complete."""
        creds = self.credentials
        return bool(creds.client_id and creds.client_secret and creds.refresh_token)

    async def _ensure_token(self, force_refresh: bool = False) -> tuple[bool, str]:
        """Ensure a valid access token is available."""
        async with self._refresh_lock:
            now = datetime.now(timezone.utc)
            if (
                not force_refresh
                and self._cached_token
                and self._token_expiry
                and self._token_expiry > now + timedelta(seconds=30)
            ):
                return True, self._cached_token

            if not self._can_refresh():
                if self._cached_token:
                    return True, self._cached_token
                return False, "Google credentials not configured."

            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(
                        TOKEN_URL,
                        data={
                            "client_id": self.credentials.client_id,
                            "client_secret": self.credentials.client_secret,
                            "refresh_token": self.credentials.refresh_token,
                            "grant_type": "refresh_token",
                        },
                    )
                if response.status_code != 200:
                    return False, _format_refresh_error(response)
                data = response.json()
                token = data.get("access_token", "")
                if not token:
                    return False, "Token refresh failed: no access_token"
                expires_in = int(data.get("expires_in", 3600))
                self._cached_token = token
                self._token_expiry = now + timedelta(seconds=max(60, expires_in - 30))
                logger.debug("Google access token refreshed")
                return True, token
            except (httpx.HTTPError, json.JSONDecodeError, ValueError) as e:
                return False, str(e)

    async def request(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> tuple[bool, dict[str, Any]]:
        """Perform authenticated request to Google APIs."""
        ok, token_or_error = await self._ensure_token()
        if not ok:
            return False, {"error": token_or_error}
        token = token_or_error

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                for attempt in range(2):
                    response = await client.request(
                        method=method.upper(),
                        url=url,
                        params=params,
                        json=json_body,
                        headers={"Authorization": f"Bearer {token}"},
                    )

                    payload: dict[str, Any] = {}
                    try:
                        parsed = response.json()
                        payload = parsed if isinstance(parsed, dict) else {"data": parsed}
                    except (json.JSONDecodeError, ValueError):
                        payload = {"raw": response.text}

                    if response.status_code == 401 and attempt == 0 and self._can_refresh():
                        refreshed, refreshed_or_error = await self._ensure_token(force_refresh=True)
                        if not refreshed:
                            return False, {"error": refreshed_or_error}
                        token = refreshed_or_error
                        continue

                    if response.status_code >= 400:
                        if isinstance(payload.get("error"), dict):
                            payload["google_error"] = payload.get("error")
                        payload["error"] = _format_google_api_error(response.status_code, payload)
                        return False, payload

                    return True, payload

            return False, {"error": "Google API request failed without response."}
        except httpx.HTTPError as e:
            return False, {"error": f"network error: {e}"}


def _calendar_events_url(client: GoogleWorkspaceClient, event_id: str | None = None) -> str:
    base = f"{CALENDAR_API}/calendars/{quote(client.calendar_id, safe='')}/events"
    if event_id:
        return f"{base}/{quote(event_id, safe='')}"
    return base


def _encode_message(to: str, subject: str, body: str) -> str:
    """Build a base64url RFC 2822 message for the Gmail API."""
    message = EmailMessage()
    message["To"] = to
    message["Subject"] = subject
    message.set_content(body)
    return base64.urlsafe_b64encode(message.as_bytes()).decode("ascii").rstrip("=")


def _decode_part(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")
    except (ValueError, UnicodeEncodeError):
        return ""


def _extract_message_body(payload: dict[str, Any]) -> str:
    """Return the first text/plain body in a Gmail payload, else the first text/html one."""
    plain: list[str] = []
    html: list[str] = []

    def walk(part: dict[str, Any]) -> None:
        mime = str(part.get("mimeType", ""))
        data = (part.get("body") or {}).get("data")
        if data and mime == "text/plain":
            plain.append(_decode_part(data))
        elif data and mime == "text/html":
            html.append(_decode_part(data))
        for child in part.get("parts", []) or []:
            if isinstance(child, dict):
                walk(child)

    if isinstance(payload, dict):
        walk(payload)
    if plain:
        return plain[0].strip()
    if html:
        return html[0].strip()
    return ""


def message_headers(message: dict[str, Any]) -> dict[str, str]:
    headers = (message.get("payload") or {}).get("headers", []) or []
    return {
        str(h.get("name", "")).lower(): str(h.get("value", ""))
        for h in headers
        if isinstance(h, dict)
    }


class _GoogleTool(Tool):
    def __init__(self, client: GoogleWorkspaceClient):
        self.client = client


class GetCalendarEventsTool(_GoogleTool):
    """List calendar events inside a time window."""

    name = "get_calendar_events"
    description = (
        "List events from the user's Google Calendar between timeMin and timeMax "
        "(RFC3339 datetimes). At least one bound is required."
    )
    parameters = {
        "type": "object",
        "properties": {
            "timeMin": {"type": "string", "description": "Window start, RFC3339"},
            "timeMax": {"type": "string", "description": "Window end, RFC3339"},
            "maxResults": {"type": "integer", "minimum": 1, "maximum": 50, "default": 20},
        },
        "required": [],
    }

    async def execute(
        self,
        ctx: ToolContext,
        timeMin: str | None = None,
        timeMax: str | None = None,
        maxResults: int = 20,
        **kwargs: Any,
    ) -> dict[str, Any]:
        time_min = (timeMin or "").strip()
        time_max = (timeMax or "").strip()
        if not time_min and not time_max:
            return error_result("timeMin or timeMax is required; refusing an unbounded query.", items=[])
        if not self.client.is_configured():
            return error_result("Google Workspace not configured.")

        params: dict[str, Any] = {
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": max(1, min(int(maxResults), 50)),
        }
        if time_min:
            params["timeMin"] = time_min
        if time_max:
            params["timeMax"] = time_max

        ok, data = await self.client.request("GET", _calendar_events_url(self.client), params=params)
        if not ok:
            return error_result(data.get("error", "calendar request failed"))
        return {"status": "ok", "items": data.get("items", []) or []}


class CreateCalendarEventTool(_GoogleTool):
    """Create a calendar event."""

    name = "create_calendar_event"
    description = "Create an event in the user's Google Calendar."
    parameters = {
        "type": "object",
        "properties": {
            "summary": {"type": "string", "description": "Event title"},
            "start": {"type": "string", "description": "Start datetime, RFC3339"},
            "end": {"type": "string", "description": "End datetime, RFC3339"},
            "description": {"type": "string", "description": "Event description"},
            "location": {"type": "string", "description": "Event location"},
        },
        "required": ["summary", "start", "end"],
    }

    async def execute(
        self,
        ctx: ToolContext,
        summary: str | None = None,
        start: str | None = None,
        end: str | None = None,
        description: str = "",
        location: str = "",
        **kwargs: Any,
    ) -> dict[str, Any]:
        summary_text = (summary or "").strip()
        start_text = (start or "").strip()
        end_text = (end or "").strip()
        if not summary_text:
            return error_result("summary is required.")
        if not start_text or not end_text:
            return error_result("start and end are required.")
        if not self.client.is_configured():
            return error_result("Google Workspace not configured.")

        body = {
            "summary": summary_text,
            "description": description,
            "location": location,
            "start": {"dateTime": start_text, "timeZone": ctx.timezone},
            "end": {"dateTime": end_text, "timeZone": ctx.timezone},
        }
        ok, data = await self.client.request("POST", _calendar_events_url(self.client), json_body=body)
        if not ok:
            return error_result(data.get("error", "calendar request failed"))
        return {**data, "status": "created"}


class UpdateCalendarEventTool(_GoogleTool):
    """Reschedule (and optionally rename) an existing event."""

    name = "update_calendar_event"
    description = "Move an existing calendar event to a new start/end time. Requires the event id."
    parameters = {
        "type": "object",
        "properties": {
            "eventId": {"type": "string", "description": "Event id from get_calendar_events"},
            "start": {"type": "string", "description": "New start datetime, RFC3339"},
            "end": {"type": "string", "description": "New end datetime, RFC3339"},
            "summary": {"type": "string", "description": "Optional new title"},
        },
        "required": ["eventId"],
    }

    async def execute(
        self,
        ctx: ToolContext,
        eventId: str | None = None,
        start: str | None = None,
        end: str | None = None,
        summary: str | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        event_id = (eventId or "").strip()
        if not event_id:
            return error_result("eventId is required.")

        body: dict[str, Any] = {}
        if summary:
            body["summary"] = summary
        if start:
            body["start"] = {"dateTime": start, "timeZone": ctx.timezone}
        if end:
            body["end"] = {"dateTime": end, "timeZone": ctx.timezone}
        if not body:
            return error_result("no update fields provided.")
        if not self.client.is_configured():
            return error_result("Google Workspace not configured.")

        ok, data = await self.client.request(
            "PATCH", _calendar_events_url(self.client, event_id), json_body=body
        )
        if not ok:
            return error_result(data.get("error", "calendar request failed"))
        return {**data, "status": "updated"}


class SearchEmailsTool(_GoogleTool):
    """Search Gmail messages."""

    name = "search_emails"
    description = "Search the user's Gmail with a Gmail query (e.g. 'from:ana is:unread newer_than:7d')."
    parameters = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Gmail search query"},
            "maxResults": {"type": "integer", "minimum": 1, "maximum": 20, "default": 10},
        },
        "required": ["query"],
    }

    async def execute(
        self,
        ctx: ToolContext,
        query: str | None = None,
        maxResults: int = 10,
        **kwargs: Any,
    ) -> dict[str, Any]:
        query_text = (query or "").strip()
        if not query_text:
            return error_result("query is required.")
        if not self.client.is_configured():
            return error_result("Google Workspace not configured.")

        ok, data = await self.client.request(
            "GET",
            f"{GMAIL_API}/messages",
            params={"q": query_text, "maxResults": max(1, min(int(maxResults), 20))},
        )
        if not ok:
            return error_result(data.get("error", "gmail request failed"))

        refs = data.get("messages", []) or []
        lookups = [
            self.client.request(
                "GET",
                f"{GMAIL_API}/messages/{quote(str(ref.get('id', '')), safe='')}",
                params={"format": "metadata", "metadataHeaders": ["From", "Subject", "Date"]},
            )
            for ref in refs
            if ref.get("id")
        ]
        messages: list[dict[str, Any]] = []
        for ok_meta, meta in await asyncio.gather(*lookups):
            if ok_meta:
                messages.append(meta)
        return {"status": "ok", "messages": messages}


class GetEmailDetailsTool(_GoogleTool):
    """Read a single Gmail message."""

    name = "get_email_details"
    description = "Read the full content of one email by its message id (from search_emails)."
    parameters = {
        "type": "object",
        "properties": {
            "messageId": {"type": "string", "description": "Gmail message id"},
        },
        "required": ["messageId"],
    }

    async def execute(self, ctx: ToolContext, messageId: str | None = None, **kwargs: Any) -> dict[str, Any]:
        message_id = (messageId or "").strip()
        if not message_id:
            return error_result("messageId is required.")
        if not self.client.is_configured():
            return error_result("Google Workspace not configured.")

        ok, data = await self.client.request(
            "GET",
            f"{GMAIL_API}/messages/{quote(message_id, safe='')}",
            params={"format": "full"},
        )
        if not ok:
            return error_result(data.get("error", "gmail request failed"))
        return {"status": "ok", **data, "body": _extract_message_body(data.get("payload") or {})}


class SendEmailTool(_GoogleTool):
    """Send an email from the user's Gmail account."""

    name = "send_email"
    description = "Send a plain-text email. Confirm recipient and content with the user first."
    parameters = {
        "type": "object",
        "properties": {
            "to": {"type": "string", "description": "Recipient email"},
            "subject": {"type": "string", "description": "Email subject"},
            "body": {"type": "string", "description": "Plain text body"},
        },
        "required": ["to", "subject", "body"],
    }

    endpoint = "messages/send"

    async def execute(
        self,
        ctx: ToolContext,
        to: str | None = None,
        subject: str | None = None,
        body: str | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        to_addr = (to or "").strip()
        subject_text = (subject or "").strip()
        if not to_addr or "@" not in to_addr:
            return error_result("a valid recipient address is required.")
        if not subject_text:
            return error_result("subject is required.")
        if body is None:
            return error_result("body is required.")
        if not self.client.is_configured():
            return error_result("Google Workspace not configured.")

        raw = _encode_message(to_addr, subject_text, body)
        ok, data = await self.client.request("POST", f"{GMAIL_API}/{self.endpoint}", json_body=self._body(raw))
        if not ok:
            return error_result(data.get("error", "gmail request failed"))
        return self._result(data, to_addr, subject_text)

    def _body(self, raw: str) -> dict[str, Any]:
        return {"raw": raw}

    def _result(self, data: dict[str, Any], to: str, subject: str) -> dict[str, Any]:
        return {"status": "sent", "id": data.get("id"), "threadId": data.get("threadId"), "to": to, "subject": subject}


class CreateDraftTool(SendEmailTool):
    """Create a Gmail draft instead of sending."""

    name = "create_draft"
    description = "Save a plain-text email as a Gmail draft without sending it."
    endpoint = "drafts"

    def _body(self, raw: str) -> dict[str, Any]:
        return {"message": {"raw": raw}}

    def _result(self, data: dict[str, Any], to: str, subject: str) -> dict[str, Any]:
        message = data.get("message") or {}
        return {
            "status": "drafted",
            "id": data.get("id"),
            "messageId": message.get("id"),
            "to": to,
            "subject": subject,
        }


class ModifyEmailStatusTool(_GoogleTool):
    """Archive, trash or change the read state of a message."""

    name = "modify_email_status"
    description = "Archive, trash, or mark as read/unread an email by message id."
    parameters = {
        "type": "object",
        "properties": {
            "messageId": {"type": "string", "description": "Gmail message id"},
            "action": {"type": "string", "enum": list(EMAIL_ACTIONS)},
        },
        "required": ["messageId", "action"],
    }

    _LABEL_CHANGES = {
        "archive": {"removeLabelIds": ["INBOX"]},
        "mark_as_read": {"removeLabelIds": ["UNREAD"]},
        "mark_as_unread": {"addLabelIds": ["UNREAD"]},
    }

    async def execute(
        self,
        ctx: ToolContext,
        messageId: str | None = None,
        action: str | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        message_id = (messageId or "").strip()
        action_name = (action or "").strip().lower()
        if not message_id:
            return error_result("messageId is required.")
        if action_name not in EMAIL_ACTIONS:
            return error_result(f"action must be one of {', '.join(EMAIL_ACTIONS)}.")
        if not self.client.is_configured():
            return error_result("Google Workspace not configured.")

        url = f"{GMAIL_API}/messages/{quote(message_id, safe='')}"
        if action_name == "trash":
            ok, data = await self.client.request("POST", f"{url}/trash")
        else:
            ok, data = await self.client.request(
                "POST", f"{url}/modify", json_body=self._LABEL_CHANGES[action_name]
            )
        if not ok:
            return error_result(data.get("error", "gmail request failed"))
        return {"status": "ok", "action": action_name, "id": data.get("id", message_id), "labelIds": data.get("labelIds", [])}


def build_google_tools(client: GoogleWorkspaceClient) -> list[Tool]:
    """All calendar and mail tools sharing one client."""
    return [
        GetCalendarEventsTool(client),
        CreateCalendarEventTool(client),
        UpdateCalendarEventTool(client),
        SearchEmailsTool(client),
        GetEmailDetailsTool(client),
        SendEmailTool(client),
        CreateDraftTool(client),
        ModifyEmailStatusTool(client),
    ]
