"""Voice transcription provider using Groq."""

from pathlib import Path

import httpx
from loguru import logger


class GroqTranscriptionProvider:
    """
    Voice transcription provider using Groq's Whisper API.

    WhatsApp voice notes arrive as OGG/Opus files, which Groq accepts as-is.
    """

    api_url = "https://api.groq.com/openai/v1/audio/transcriptions"

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "whisper-large-v3-turbo",
        temperature: str = "0",
        response_format: str = "verbose_json",
    ):
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.response_format = response_format

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def transcribe(self, file_path: str | Path) -> str:
        """
        Transcribe an audio file using Groq.

        Args:
            file_path: Path to the audio file.

        Returns:
            Transcribed text, or an empty string on any failure.
        """
        if not self.api_key:
            logger.warning("Groq API key not configured for transcription")
            return ""

        path = Path(file_path)
        if not path.exists():
            logger.error(f"Audio file not found: {file_path}")
            return ""

        try:
            async with httpx.AsyncClient() as client:
                with open(path, "rb") as f:
                    files = {
                        "file": (path.name, f),
                        "model": (None, self.model),
                        "temperature": (None, self.temperature),
                        "response_format": (None, self.response_format),
                    }
                    headers = {
                        "Authorization": f"Bearer {self.api_key}",
                    }

                    response = await client.post(
                        self.api_url, headers=headers, files=files, timeout=60.0
                    )

                    response.raise_for_status()
                    data = response.json()
                    if isinstance(data, dict):
                        return str(data.get("text", "") or "").strip()
                    return ""

        except (httpx.HTTPError, OSError, ValueError) as e:
            logger.error(f"Groq transcription error: {e}")
            return ""
