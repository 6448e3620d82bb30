"""LiteLLM provider implementation for multi-provider support."""

from __future__ import annotations

import json
import os
from typing import Any

import litellm
from litellm import acompletion
from loguru import logger

from wa_agent.providers.base import LLMProvider, LLMResponse, ToolCallRequest

# provider name -> (env var holding the key, litellm model prefix)
_PROVIDER_ENV: dict[str, tuple[str, str]] = {
    "openai": ("OPENAI_API_KEY", "openai"),
    "anthropic": ("ANTHROPIC_API_KEY", "anthropic"),
    "openrouter": ("OPENROUTER_API_KEY", "openrouter"),
    "gemini": ("GEMINI_API_KEY", "gemini"),
    "groq": ("GROQ_API_KEY", "groq"),
}

_KEYWORD_PROVIDER = (
    ("claude", "anthropic"),
    ("gpt", "openai"),
    ("o1", "openai"),
    ("o3", "openai"),
    ("gemini", "gemini"),
    ("llama", "groq"),
)


class LiteLLMProvider(LLMProvider):
    """
    LLM provider using LiteLLM for multi-provider support.

    Supports OpenAI, Anthropic, OpenRouter, Gemini and Groq through a unified
    interface. Gateway providers (OpenRouter) always get their own prefix.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "openai/gpt-4o-mini",
        extra_headers: dict[str, str] | None = None,
        provider_name: str | None = None,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.extra_headers = extra_headers or {}
        self.provider_name = (provider_name or "").strip().lower() or None

        if api_key:
            self._setup_env(api_key)
        if api_base:
            litellm.api_base = api_base

        litellm.suppress_debug_info = True
        litellm.drop_params = True

    def _setup_env(self, api_key: str) -> None:
        """Expose the key under the env var LiteLLM reads for the provider."""
        provider = self.provider_name or self._provider_for_model(self.default_model)
        env = _PROVIDER_ENV.get(provider or "")
        if not env:
            return
        if provider == "openrouter":
            os.environ[env[0]] = api_key
        else:
            os.environ.setdefault(env[0], api_key)

    def _provider_for_model(self, model: str) -> str | None:
        lowered = model.lower()
        prefix = lowered.split("/", 1)[0] if "/" in lowered else ""
        if prefix in _PROVIDER_ENV:
            return prefix
        for keyword, provider in _KEYWORD_PROVIDER:
            if keyword in lowered:
                return provider
        return None

    def _resolve_model(self, model: str) -> str:
        """Apply the LiteLLM routing prefix when missing."""
        if self.provider_name == "openrouter":
            return model if model.startswith("openrouter/") else f"openrouter/{model}"
        if "/" in model:
            return model
        provider = self._provider_for_model(model)
        if provider:
            return f"{_PROVIDER_ENV[provider][1]}/{model}"
        return model

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 1024,
        temperature: float = 0.3,
        tool_choice: str = "auto",
    ) -> LLMResponse:
        """
        Send a chat completion request via LiteLLM.

        Errors are returned as an LLMResponse with finish_reason="error" so the
        caller can decide whether to fail over to another model.
        """
        resolved = self._resolve_model(model or self.default_model)
        kwargs: dict[str, Any] = {
            "model": resolved,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = tool_choice

        try:
            response = await acompletion(**kwargs)
            return self._parse_response(response)
        except Exception as e:
            logger.warning(f"LiteLLM call failed for {resolved}: {e}")
            return LLMResponse(content=f"Error calling LLM: {str(e)}", finish_reason="error")

    def _parse_response(self, response: Any) -> LLMResponse:
        """Parse LiteLLM response into our standard format."""
        choice = response.choices[0]
        message = choice.message

        tool_calls: list[ToolCallRequest] = []
        for tc in getattr(message, "tool_calls", None) or []:
            raw_args = tc.function.arguments
            args: dict[str, Any] = {}
            parse_error = None
            if isinstance(raw_args, dict):
                args = raw_args
            elif raw_args:
                try:
                    decoded = json.loads(raw_args)
                    if isinstance(decoded, dict):
                        args = decoded
                    else:
                        parse_error = "arguments must be a JSON object"
                except json.JSONDecodeError as e:
                    parse_error = f"invalid JSON arguments: {e.msg}"
            tool_calls.append(
                ToolCallRequest(
                    id=tc.id,
                    name=tc.function.name,
                    arguments=args,
                    parse_error=parse_error,
                )
            )

        usage: dict[str, int] = {}
        if getattr(response, "usage", None):
            usage = {
                "prompt_tokens": int(getattr(response.usage, "prompt_tokens", 0) or 0),
                "completion_tokens": int(getattr(response.usage, "completion_tokens", 0) or 0),
                "total_tokens": int(getattr(response.usage, "total_tokens", 0) or 0),
            }

        return LLMResponse(
            content=message.content,
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
        )

    def get_default_model(self) -> str:
        """Get the default model."""
        return self.default_model
