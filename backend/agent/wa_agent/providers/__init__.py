"""LLM and transcription provider module."""

from wa_agent.providers.base import LLMProvider, LLMResponse, ToolCallRequest
from wa_agent.providers.transcription import GroqTranscriptionProvider

__all__ = [
    "GroqTranscriptionProvider",
    "LLMProvider",
    "LLMResponse",
    "ToolCallRequest",
]
