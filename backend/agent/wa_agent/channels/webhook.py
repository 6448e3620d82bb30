"""Webhook HTTP server for the WhatsApp Cloud API."""

from __future__ import annotations

import asyncio
import json
from collections import OrderedDict
from typing import Protocol
from urllib.parse import parse_qs, urlsplit

from loguru import logger

from wa_agent.channels.base import InboundMessage, OutboundMessage
from wa_agent.channels.whatsapp import WhatsAppChannel

AUDIO_NOT_UNDERSTOOD_MESSAGE = "Sorry, I couldn't understand your voice message. Could you type it instead?"
MAX_BODY_BYTES = 1024 * 1024
RECENT_MESSAGE_IDS = 1024


class MessageHandler(Protocol):
    async def handle_message(self, user_id: str, text: str) -> str: ...


class WebhookServer:
    """
    Serve the webhook verification handshake and inbound message deliveries.

    POST requests are acknowledged immediately; each message is processed in
    a background task that runs the agent and sends the reply.
    """

    def __init__(
        self,
        *,
        channel: WhatsAppChannel,
        handler: MessageHandler,
        host: str = "0.0.0.0",
        port: int = 3000,
        path: str = "/webhook",
    ):
        self.channel = channel
        self.handler = handler
        self.host = str(host or "0.0.0.0").strip()
        self.port = max(0, int(port))
        raw_path = str(path or "/webhook").strip()
        self.path = raw_path if raw_path.startswith("/") else f"/{raw_path}"
        self._server: asyncio.AbstractServer | None = None
        self._tasks: set[asyncio.Task] = set()
        self._seen_ids: OrderedDict[str, None] = OrderedDict()

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def bound_port(self) -> int:
        if not self._server or not self._server.sockets:
            return self.port
        return int(self._server.sockets[0].getsockname()[1])

    async def start(self) -> None:
        if self._server:
            return
        self._server = await asyncio.start_server(
            self._handle_client, host=self.host, port=self.port
        )
        logger.info(f"Webhook listening on {self.host}:{self.bound_port}{self.path}")

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        await self.drain()

    async def drain(self) -> None:
        """Wait for in-flight message tasks to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def serve_forever(self) -> None:
        await self.start()
        try:
            while self._server is not None:
                await asyncio.sleep(3600)
        finally:
            await self.stop()

    def _http_response(
        self, status: int, body: str, content_type: str = "text/plain; charset=utf-8"
    ) -> bytes:
        reason = {
            200: "OK",
            400: "Bad Request",
            403: "Forbidden",
            404: "Not Found",
            405: "Method Not Allowed",
            413: "Payload Too Large",
            500: "Internal Server Error",
        }.get(status, "OK")
        data = body.encode("utf-8")
        headers = [
            f"HTTP/1.1 {status} {reason}",
            f"Content-Type: {content_type}",
            f"Content-Length: {len(data)}",
            "Connection: close",
            "",
            "",
        ]
        return "\r\n".join(headers).encode("utf-8") + data

    async def handle_request(
        self,
        method: str,
        target: str,
        headers: dict[str, str],
        body: bytes,
    ) -> tuple[int, str]:
        """Route one parsed request; returns (status, body)."""
        parsed = urlsplit(target)
        path = parsed.path or "/"
        if path == "/health":
            return 200, "ok\n"
        if path != self.path:
            return 404, "not found\n"

        method = method.upper()
        if method == "GET":
            query = parse_qs(parsed.query or "")
            challenge = self.channel.verify_subscription(
                (query.get("hub.mode") or [None])[0],
                (query.get("hub.verify_token") or [None])[0],
                (query.get("hub.challenge") or [None])[0],
            )
            if challenge is None:
                logger.warning("Webhook verification rejected")
                return 403, "forbidden\n"
            logger.info("Webhook verified")
            return 200, challenge

        if method != "POST":
            return 405, "method not allowed\n"

        if not self.channel.verify_signature(body, headers.get("x-hub-signature-256")):
            logger.warning("Webhook delivery with invalid signature rejected")
            return 403, "invalid signature\n"
        try:
            payload = json.loads(body.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError):
            return 400, "bad request\n"

        for msg in self.channel.parse_webhook_payload(payload):
            self.dispatch(msg)
        return 200, "EVENT_RECEIVED"

    def dispatch(self, msg: InboundMessage) -> bool:
        """Schedule background processing of one inbound message."""
        if msg.message_id:
            if msg.message_id in self._seen_ids:
                logger.debug(f"Duplicate delivery of {msg.message_id} ignored")
                return False
            self._seen_ids[msg.message_id] = None
            while len(self._seen_ids) > RECENT_MESSAGE_IDS:
                self._seen_ids.popitem(last=False)

        if not self.channel.is_allowed(msg.sender_id):
            logger.warning(
                f"Access denied for sender {msg.sender_id} on channel {self.channel.name}. "
                f"Add them to allowFrom list in config to grant access."
            )
            return False

        task = asyncio.create_task(self._process(msg))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _process(self, msg: InboundMessage) -> None:
        try:
            text = await self.channel.resolve_content(msg)
            if not text.strip():
                reply = AUDIO_NOT_UNDERSTOOD_MESSAGE
            else:
                reply = await self.handler.handle_message(msg.sender_id, text)
            await self.channel.send(
                OutboundMessage(chat_id=msg.chat_id, content=reply, reply_to=msg.message_id or None)
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error processing message {msg.message_id or '?'} from {msg.sender_id}: {e}")

    async def _read_request(
        self, reader: asyncio.StreamReader
    ) -> tuple[str, str, dict[str, str], bytes] | None:
        head = await reader.readuntil(b"\r\n\r\n")
        lines = head.decode("utf-8", errors="ignore").split("\r\n")
        parts = lines[0].split() if lines else []
        if len(parts) < 2:
            return None
        headers: dict[str, str] = {}
        for line in lines[1:]:
            if ":" in line:
                key, value = line.split(":", 1)
                headers[key.strip().lower()] = value.strip()
        length = int(headers.get("content-length", "0") or 0)
        if length > MAX_BODY_BYTES:
            raise ValueError("payload too large")
        body = await reader.readexactly(length) if length > 0 else b""
        return parts[0], parts[1], headers, body

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            try:
                request = await self._read_request(reader)
            except ValueError:
                writer.write(self._http_response(413, "payload too large\n"))
                await writer.drain()
                return
            except (asyncio.IncompleteReadError, asyncio.LimitOverrunError):
                writer.write(self._http_response(400, "bad request\n"))
                await writer.drain()
                return
            if request is None:
                writer.write(self._http_response(400, "bad request\n"))
                await writer.drain()
                return

            status, body = await self.handle_request(*request)
            writer.write(self._http_response(status, body))
            await writer.drain()
        except Exception as e:
            logger.error(f"Webhook request failed: {e}")
            writer.write(self._http_response(500, "internal error\n"))
            await writer.drain()
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
