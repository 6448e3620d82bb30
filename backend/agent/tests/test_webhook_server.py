import asyncio
import hashlib
import hmac
import json
from typing import Any

from wa_agent.channels.base import OutboundMessage
from wa_agent.channels.webhook import AUDIO_NOT_UNDERSTOOD_MESSAGE, WebhookServer
from wa_agent.channels.whatsapp import WhatsAppChannel
from wa_agent.config.schema import WhatsAppConfig


class _FakeWriter:
    def __init__(self):
        self._chunks: list[bytes] = []
        self.closed = False
        self.wait_closed_called = False

    def write(self, data: bytes) -> None:
        self._chunks.append(data)

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        self.wait_closed_called = True

    @property
    def payload(self) -> bytes:
        return b"".join(self._chunks)


class RecordingChannel(WhatsAppChannel):
    """Real parsing/verification, recorded delivery."""

    def __init__(self, config: WhatsAppConfig, transcripts: dict[str, str] | None = None):
        super().__init__(config)
        self.sent: list[OutboundMessage] = []
        self.transcripts = transcripts or {}

    async def send(self, msg: OutboundMessage) -> bool:
        self.sent.append(msg)
        return True

    async def resolve_content(self, msg) -> str:
        if msg.kind == "audio":
            return self.transcripts.get(msg.media_id, "")
        return msg.content


class EchoHandler:
    def __init__(self, fail: bool = False):
        self.calls: list[tuple[str, str]] = []
        self.fail = fail

    async def handle_message(self, user_id: str, text: str) -> str:
        self.calls.append((user_id, text))
        if self.fail:
            raise RuntimeError("agent crashed")
        return f"eco: {text}"


def _parse_http(payload: bytes) -> tuple[int, str]:
    head, _, body = payload.partition(b"\r\n\r\n")
    status_line = head.decode("utf-8", errors="ignore").splitlines()[0]
    return int(status_line.split()[1]), body.decode("utf-8", errors="ignore")


def _server(monkeypatch, tmp_path, config: dict[str, Any] | None = None, **kwargs: Any):
    monkeypatch.setenv("WA_AGENT_DATA_DIR", str(tmp_path / "data"))
    values = {"token": "t", "phone_number_id": "1", "verify_token": "verify-me"}
    values.update(config or {})
    channel = RecordingChannel(WhatsAppConfig(**values), kwargs.pop("transcripts", None))
    handler = kwargs.pop("handler", None) or EchoHandler()
    return WebhookServer(channel=channel, handler=handler, port=0, **kwargs), channel, handler


def _text_payload(message_id: str, sender: str = "34600111222", body: str = "hola") -> dict[str, Any]:
    return {
        "entry": [
            {
                "changes": [
                    {
                        "value": {
                            "messages": [
                                {"from": sender, "id": message_id, "type": "text", "text": {"body": body}}
                            ]
                        }
                    }
                ]
            }
        ]
    }


def test_verification_handshake(monkeypatch, tmp_path):
    server, _, _ = _server(monkeypatch, tmp_path)

    ok = asyncio.run(
        server.handle_request(
            "GET", "/webhook?hub.mode=subscribe&hub.verify_token=verify-me&hub.challenge=98765", {}, b""
        )
    )
    rejected = asyncio.run(
        server.handle_request(
            "GET", "/webhook?hub.mode=subscribe&hub.verify_token=nope&hub.challenge=98765", {}, b""
        )
    )

    assert ok == (200, "98765")
    assert rejected[0] == 403


def test_unknown_path_and_method(monkeypatch, tmp_path):
    server, _, _ = _server(monkeypatch, tmp_path)

    assert asyncio.run(server.handle_request("GET", "/other", {}, b""))[0] == 404
    assert asyncio.run(server.handle_request("PUT", "/webhook", {}, b""))[0] == 405
    assert asyncio.run(server.handle_request("GET", "/health", {}, b"")) == (200, "ok\n")


def test_post_acknowledges_and_replies_in_background(monkeypatch, tmp_path):
    server, channel, handler = _server(monkeypatch, tmp_path)

    async def scenario():
        body = json.dumps(_text_payload("wamid.1", body="¿qué tengo hoy?")).encode()
        status = await server.handle_request("POST", "/webhook", {}, body)
        await server.drain()
        return status

    assert asyncio.run(scenario()) == (200, "EVENT_RECEIVED")
    assert handler.calls == [("34600111222", "¿qué tengo hoy?")]
    assert len(channel.sent) == 1
    assert channel.sent[0].chat_id == "34600111222"
    assert channel.sent[0].content == "eco: ¿qué tengo hoy?"
    assert channel.sent[0].reply_to == "wamid.1"


def test_duplicate_deliveries_are_processed_once(monkeypatch, tmp_path):
    server, channel, handler = _server(monkeypatch, tmp_path)

    async def scenario():
        body = json.dumps(_text_payload("wamid.dup")).encode()
        await server.handle_request("POST", "/webhook", {}, body)
        await server.handle_request("POST", "/webhook", {}, body)
        await server.drain()

    asyncio.run(scenario())

    assert len(handler.calls) == 1
    assert len(channel.sent) == 1


def test_allowlist_drops_unknown_senders(monkeypatch, tmp_path):
    server, channel, handler = _server(monkeypatch, tmp_path, {"allow_from": ["34600111222"]})

    async def scenario():
        await server.handle_request("POST", "/webhook", {}, json.dumps(_text_payload("a", sender="4470000")).encode())
        await server.handle_request("POST", "/webhook", {}, json.dumps(_text_payload("b")).encode())
        await server.drain()

    asyncio.run(scenario())

    assert [c[0] for c in handler.calls] == ["34600111222"]


def test_signature_is_enforced_when_secret_configured(monkeypatch, tmp_path):
    server, channel, handler = _server(monkeypatch, tmp_path, {"app_secret": "s3cret"})
    body = json.dumps(_text_payload("wamid.sig")).encode()
    signature = "sha256=" + hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

    async def scenario():
        bad = await server.handle_request("POST", "/webhook", {"x-hub-signature-256": "sha256=00"}, body)
        good = await server.handle_request("POST", "/webhook", {"x-hub-signature-256": signature}, body)
        await server.drain()
        return bad, good

    bad, good = asyncio.run(scenario())

    assert bad[0] == 403
    assert good[0] == 200
    assert len(handler.calls) == 1


def test_invalid_json_is_rejected(monkeypatch, tmp_path):
    server, _, _ = _server(monkeypatch, tmp_path)

    assert asyncio.run(server.handle_request("POST", "/webhook", {}, b"{not json"))[0] == 400


def test_voice_notes_are_transcribed_or_answered_with_fixed_text(monkeypatch, tmp_path):
    server, channel, handler = _server(monkeypatch, tmp_path, transcripts={"media-ok": "apunta pan"})
    payload = {
        "entry": [
            {
                "changes": [
                    {
                        "value": {
                            "messages": [
                                {"from": "1", "id": "v1", "type": "audio", "audio": {"id": "media-ok"}},
                                {"from": "2", "id": "v2", "type": "audio", "audio": {"id": "media-bad"}},
                            ]
                        }
                    }
                ]
            }
        ]
    }

    async def scenario():
        await server.handle_request("POST", "/webhook", {}, json.dumps(payload).encode())
        await server.drain()

    asyncio.run(scenario())

    assert handler.calls == [("1", "apunta pan")]
    replies = {m.chat_id: m.content for m in channel.sent}
    assert replies == {"1": "eco: apunta pan", "2": AUDIO_NOT_UNDERSTOOD_MESSAGE}


def test_processing_failure_is_contained(monkeypatch, tmp_path):
    server, channel, _ = _server(monkeypatch, tmp_path, handler=EchoHandler(fail=True))

    async def scenario():
        status = await server.handle_request("POST", "/webhook", {}, json.dumps(_text_payload("x")).encode())
        await server.drain()
        return status

    assert asyncio.run(scenario())[0] == 200
    assert channel.sent == []


def test_handle_client_reads_full_request(monkeypatch, tmp_path):
    server, channel, handler = _server(monkeypatch, tmp_path)
    body = json.dumps(_text_payload("wamid.raw")).encode()

    async def send(raw: bytes) -> tuple[int, str]:
        reader = asyncio.StreamReader()
        reader.feed_data(raw)
        reader.feed_eof()
        writer = _FakeWriter()
        await server._handle_client(reader, writer)
        await server.drain()
        assert writer.closed is True
        return _parse_http(writer.payload)

    request = (
        b"POST /webhook HTTP/1.1\r\nHost: localhost\r\nContent-Type: application/json\r\n"
        + f"Content-Length: {len(body)}\r\n\r\n".encode()
        + body
    )
    status, text = asyncio.run(send(request))
    assert status == 200
    assert text == "EVENT_RECEIVED"
    assert handler.calls == [("34600111222", "hola")]

    status, _ = asyncio.run(send(b"garbage\r\n\r\n"))
    assert status == 400
    status, _ = asyncio.run(send(b"POST /webhook HTTP/1.1\r\nContent-Length: 50\r\n\r\n{}"))
    assert status == 400


def test_server_binds_ephemeral_port(monkeypatch, tmp_path):
    server, _, _ = _server(monkeypatch, tmp_path)

    async def scenario():
        await server.start()
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", server.bound_port)
            writer.write(
                b"GET /webhook?hub.mode=subscribe&hub.verify_token=verify-me&hub.challenge=abc HTTP/1.1\r\n"
                b"Host: localhost\r\n\r\n"
            )
            await writer.drain()
            raw = await reader.read()
            writer.close()
            return raw
        finally:
            await server.stop()

    status, body = _parse_http(asyncio.run(scenario()))
    assert status == 200
    assert body == "abc"
    assert server.is_running is False


def test_malformed_payloads_are_acknowledged(monkeypatch, tmp_path):
    server, channel, handler = _server(monkeypatch, tmp_path)
    bodies = [
        {"entry": ["x"]},
        {"entry": [{"changes": ["y", {"value": "z"}, {"value": {"contacts": ["c"], "messages": "m"}}]}]},
        {"entry": [{"changes": [{"value": {"contacts": [{"wa_id": "1", "profile": "p"}], "messages": [
            {"from": "1", "id": "bad-text", "type": "text", "text": "plain"},
            {"from": "1", "id": "ok", "type": "text", "text": {"body": "hola"}},
        ]}}]}]},
        [1, 2, 3],
        "just a string",
    ]

    async def scenario():
        statuses = [
            await server.handle_request("POST", "/webhook", {}, json.dumps(body).encode())
            for body in bodies
        ]
        await server.drain()
        return statuses

    statuses = asyncio.run(scenario())

    assert statuses == [(200, "EVENT_RECEIVED")] * len(bodies)
    assert handler.calls == [("1", "hola")]
