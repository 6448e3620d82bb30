import asyncio
from pathlib import Path

import httpx

from wa_agent.providers.transcription import GroqTranscriptionProvider


class _DummyResponse:
    def __init__(self, payload: dict):
        self._payload = payload

    def raise_for_status(self) -> None:
        return None

    def json(self):
        return self._payload


class _DummyClient:
    def __init__(self, captured: dict, payload: dict | None = None, error: Exception | None = None):
        self.captured = captured
        self.payload = payload or {}
        self.error = error

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def post(self, url: str, headers: dict, files: dict, timeout: float):
        self.captured["url"] = url
        self.captured["headers"] = headers
        self.captured["files"] = files
        self.captured["timeout"] = timeout
        if self.error:
            raise self.error
        return _DummyResponse(self.payload)


def test_groq_transcribe_voice_note_payload(monkeypatch, tmp_path: Path):
    audio_path = tmp_path / "wamid.ogg"
    audio_path.write_bytes(b"OggS-audio")

    captured: dict[str, object] = {}
    payload = {"text": " recuérdame comprar pan "}

    monkeypatch.setattr(
        "wa_agent.providers.transcription.httpx.AsyncClient",
        lambda: _DummyClient(captured, payload),
    )

    provider = GroqTranscriptionProvider(api_key="gsk_test")
    result = asyncio.run(provider.transcribe(audio_path))

    assert result == "recuérdame comprar pan"
    assert captured["url"] == "https://api.groq.com/openai/v1/audio/transcriptions"
    assert captured["timeout"] == 60.0
    assert captured["headers"] == {"Authorization": "Bearer gsk_test"}

    files = captured["files"]
    assert files["file"][0] == "wamid.ogg"
    assert files["model"] == (None, "whisper-large-v3-turbo")
    assert files["temperature"] == (None, "0")
    assert files["response_format"] == (None, "verbose_json")


def test_groq_transcribe_custom_model(monkeypatch, tmp_path: Path):
    audio_path = tmp_path / "note.m4a"
    audio_path.write_bytes(b"audio-data")
    captured: dict[str, object] = {}

    monkeypatch.setattr(
        "wa_agent.providers.transcription.httpx.AsyncClient",
        lambda: _DummyClient(captured, {"text": "ok"}),
    )

    provider = GroqTranscriptionProvider(api_key="gsk_test", model="whisper-large-v3", response_format="json")
    assert asyncio.run(provider.transcribe(audio_path)) == "ok"
    assert captured["files"]["model"] == (None, "whisper-large-v3")
    assert captured["files"]["response_format"] == (None, "json")


def test_groq_transcribe_without_key_or_file(tmp_path: Path):
    audio_path = tmp_path / "note.ogg"
    audio_path.write_bytes(b"audio-data")

    assert GroqTranscriptionProvider().is_configured() is False
    assert asyncio.run(GroqTranscriptionProvider().transcribe(audio_path)) == ""
    assert asyncio.run(GroqTranscriptionProvider(api_key="k").transcribe(tmp_path / "missing.ogg")) == ""


def test_groq_transcribe_http_failure_is_empty(monkeypatch, tmp_path: Path):
    audio_path = tmp_path / "note.ogg"
    audio_path.write_bytes(b"audio-data")

    monkeypatch.setattr(
        "wa_agent.providers.transcription.httpx.AsyncClient",
        lambda: _DummyClient({}, error=httpx.ConnectError("unreachable")),
    )

    assert asyncio.run(GroqTranscriptionProvider(api_key="k").transcribe(audio_path)) == ""
