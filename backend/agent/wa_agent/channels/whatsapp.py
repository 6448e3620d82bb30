"""WhatsApp channel implementation using the Cloud API."""

from __future__ import annotations

import hashlib
import hmac
import mimetypes
from pathlib import Path
from typing import Any

import httpx
from loguru import logger

from wa_agent.channels.base import BaseChannel, InboundMessage, OutboundMessage
from wa_agent.config.schema import WhatsAppConfig
from wa_agent.providers.transcription import GroqTranscriptionProvider
from wa_agent.utils.helpers import ensure_dir, get_data_path

GRAPH_API = "https://graph.facebook.com"
MAX_MESSAGE_CHARS = 4096


def split_message(text: str, limit: int = MAX_MESSAGE_CHARS) -> list[str]:
    """Split text into chunks of at most `limit` chars, preferring line/word breaks."""
    remaining = text or ""
    if len(remaining) <= limit:
        return [remaining]

    chunks: list[str] = []
    while len(remaining) > limit:
        window = remaining[:limit]
        cut = window.rfind("\n")
        if cut < limit // 2:
            cut = window.rfind(" ")
        if cut < limit // 2:
            cut = limit
        chunks.append(remaining[:cut].rstrip())
        remaining = remaining[cut:].lstrip()
    if remaining:
        chunks.append(remaining)
    return chunks


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


class WhatsAppChannel(BaseChannel):
    """
    WhatsApp channel backed by the Meta Cloud API.

    Inbound messages arrive through the webhook server as JSON payloads;
    replies are posted to the Graph `messages` endpoint.
    """

    name = "whatsapp"

    def __init__(
        self,
        config: WhatsAppConfig,
        transcriber: GroqTranscriptionProvider | None = None,
        media_dir: Path | None = None,
        timeout: float = 20.0,
    ):
        super().__init__(config)
        self.config: WhatsAppConfig = config
        self.transcriber = transcriber
        self.media_dir = media_dir or get_data_path() / "media"
        self.timeout = timeout

    @property
    def messages_url(self) -> str:
        return f"{GRAPH_API}/{self.config.api_version}/{self.config.phone_number_id}/messages"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.token}"}

    def is_configured(self) -> bool:
        return bool(self.config.token and self.config.phone_number_id)

    async def send(self, msg: OutboundMessage) -> bool:
        """Send a text reply, split into several messages when it is too long."""
        if not self.is_configured():
            logger.error("WhatsApp token/phone number id not configured; reply dropped")
            return False

        chunks = split_message(msg.content)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                for chunk in chunks:
                    payload: dict[str, Any] = {
                        "messaging_product": "whatsapp",
                        "to": msg.chat_id,
                        "type": "text",
                        "text": {"body": chunk},
                    }
                    if msg.reply_to:
                        payload["context"] = {"message_id": msg.reply_to}
                    response = await client.post(
                        self.messages_url, headers=self._headers(), json=payload
                    )
                    if response.status_code >= 400:
                        logger.error(
                            f"WhatsApp send failed (HTTP {response.status_code}): {response.text[:300]}"
                        )
                        return False
        except httpx.HTTPError as e:
            logger.error(f"Error sending WhatsApp message: {e}")
            return False

        logger.info(f"Reply sent to {msg.chat_id} ({len(chunks)} part(s))")
        return True

    async def download_media(self, media_id: str) -> Path | None:
        """Fetch a media object (voice note) to the local media directory."""
        if not media_id or not self.config.token:
            return None

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                meta = await client.get(
                    f"{GRAPH_API}/{self.config.api_version}/{media_id}", headers=self._headers()
                )
                meta.raise_for_status()
                info = meta.json()
                url = str(info.get("url", "") or "")
                if not url:
                    logger.warning(f"WhatsApp media {media_id} has no download url")
                    return None
                blob = await client.get(url, headers=self._headers())
                blob.raise_for_status()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"WhatsApp media download failed for {media_id}: {e}")
            return None

        mime_type = str(info.get("mime_type", "") or "").split(";", 1)[0].strip()
        suffix = mimetypes.guess_extension(mime_type) or ".ogg"
        path = ensure_dir(self.media_dir) / f"{media_id}{suffix}"
        try:
            path.write_bytes(blob.content)
        except OSError as e:
            logger.error(f"Could not store WhatsApp media {media_id}: {e}")
            return None
        return path

    async def resolve_content(self, msg: InboundMessage) -> str:
        """
        Return the text to hand to the agent.

        Voice notes are downloaded and transcribed; an empty string means the
        audio could not be understood.
        """
        if msg.kind != "audio":
            return msg.content
        if not self.transcriber or not self.transcriber.is_configured():
            logger.warning("Voice note received but transcription is not configured")
            return ""

        path = await self.download_media(msg.media_id)
        if path is None:
            return ""
        try:
            text = await self.transcriber.transcribe(path)
        finally:
            try:
                path.unlink()
            except OSError:
                logger.debug(f"Could not remove temporary media file {path}")
        if text:
            logger.info(f"Transcribed voice note from {msg.sender_id}: {text[:50]}...")
        return text

    def verify_subscription(self, mode: str | None, token: str | None, challenge: str | None) -> str | None:
        """Return the challenge to echo when the subscription handshake is valid."""
        if mode != "subscribe" or not self.config.verify_token:
            return None
        if not hmac.compare_digest(str(token or ""), self.config.verify_token):
            return None
        return challenge or ""

    def verify_signature(self, body: bytes, signature_header: str | None) -> bool:
        """Check `X-Hub-Signature-256` when an app secret is configured."""
        if not self.config.app_secret:
            return True
        header = (signature_header or "").strip()
        if not header.startswith("sha256="):
            return False
        expected = hmac.new(self.config.app_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(header.split("=", 1)[1], expected)

    def parse_webhook_payload(self, payload: dict[str, Any]) -> list[InboundMessage]:
        """Extract text and voice messages from a Cloud API webhook body."""
        messages: list[InboundMessage] = []
        if not isinstance(payload, dict):
            return messages

        for entry in _as_list(payload.get("entry")):
            if not isinstance(entry, dict):
                continue
            for change in _as_list(entry.get("changes")):
                if not isinstance(change, dict) or not isinstance(change.get("value"), dict):
                    continue
                value = change["value"]
                names: dict[str, str] = {}
                for contact in _as_list(value.get("contacts")):
                    if not isinstance(contact, dict):
                        continue
                    name = _as_dict(contact.get("profile")).get("name", "")
                    names[str(contact.get("wa_id", ""))] = str(name or "")
                for raw in _as_list(value.get("messages")):
                    msg = self._parse_message(raw, names)
                    if msg is not None:
                        messages.append(msg)
        return messages

    def _parse_message(self, raw: Any, names: dict[str, str]) -> InboundMessage | None:
        if not isinstance(raw, dict):
            return None
        sender = str(raw.get("from", "") or "").strip()
        if not sender:
            return None
        msg_type = str(raw.get("type", "") or "")
        message_id = str(raw.get("id", "") or "")
        metadata = {
            "profile_name": names.get(sender, ""),
            "timestamp": raw.get("timestamp"),
            "type": msg_type,
        }

        if msg_type == "text":
            body = str(_as_dict(raw.get("text")).get("body", "") or "")
            if not body.strip():
                return None
            return InboundMessage(
                channel=self.name,
                sender_id=sender,
                chat_id=sender,
                content=body,
                message_id=message_id,
                metadata=metadata,
            )

        if msg_type == "audio":
            audio = _as_dict(raw.get("audio"))
            return InboundMessage(
                channel=self.name,
                sender_id=sender,
                chat_id=sender,
                content="",
                message_id=message_id,
                kind="audio",
                media_id=str(audio.get("id", "") or ""),
                mime_type=str(audio.get("mime_type", "") or ""),
                metadata=metadata,
            )

        logger.debug(f"Ignoring unsupported WhatsApp message type {msg_type!r} from {sender}")
        return None
