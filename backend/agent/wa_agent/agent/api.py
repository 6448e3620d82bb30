"""Embeddable Agent API: wires config into stores, tools and the loop."""

from __future__ import annotations

import asyncio

from wa_agent.agent.context import ContextBuilder
from wa_agent.agent.loop import AgentLoop
from wa_agent.agent.tools.google_workspace import (
    GoogleCredentials,
    GoogleWorkspaceClient,
    build_google_tools,
)
from wa_agent.agent.tools.profile import GetUserFactTool, SaveUserFactTool
from wa_agent.agent.tools.registry import ToolRegistry
from wa_agent.config.loader import load_config
from wa_agent.config.schema import Config
from wa_agent.observability.metrics import MetricsStore
from wa_agent.providers.base import LLMProvider
from wa_agent.session.memory import InMemoryConversationStore, InMemoryProfileStore
from wa_agent.session.sqlite import SqliteConversationStore, SqliteProfileStore
from wa_agent.session.store import ConversationStore, HistoryPolicy, ProfileStore


def history_policy(config: Config) -> HistoryPolicy:
    defaults = config.agent
    return HistoryPolicy(
        limit=defaults.history_limit,
        ttl_seconds=defaults.history_ttl_seconds,
        evicted=defaults.evicted_turns,
    )


def build_stores(config: Config) -> tuple[ConversationStore, ProfileStore]:
    """Create the configured conversation/profile backends."""
    policy = history_policy(config)
    backend = config.storage.backend.strip().lower()
    if backend == "memory":
        return InMemoryConversationStore(policy), InMemoryProfileStore()
    if backend != "sqlite":
        raise ValueError(f"Unknown storage backend '{config.storage.backend}'. Use sqlite or memory.")
    return (
        SqliteConversationStore(config.database_path, policy),
        SqliteProfileStore(config.database_path),
    )


def build_registry(config: Config, profiles: ProfileStore) -> ToolRegistry:
    """Register profile tools and the Google Calendar/Gmail tools."""
    registry = ToolRegistry()
    registry.register(SaveUserFactTool(profiles))
    registry.register(GetUserFactTool(profiles))
    client = GoogleWorkspaceClient(GoogleCredentials.from_config(config.google))
    for tool in build_google_tools(client):
        registry.register(tool)
    return registry


def build_provider(config: Config) -> LLMProvider:
    """Build the LiteLLM provider for the configured model."""
    from wa_agent.providers.litellm_provider import LiteLLMProvider

    model = config.agent.model
    api_key = config.get_api_key(model)
    if not api_key:
        raise ValueError(
            "No API key configured for model "
            f"'{model}'. Set providers.<name>.apiKey or WA_AGENT_PROVIDERS__<NAME>__API_KEY."
        )
    provider_cfg = config.get_provider(model)
    return LiteLLMProvider(
        api_key=api_key,
        api_base=config.get_api_base(model),
        default_model=model,
        extra_headers=provider_cfg.extra_headers if provider_cfg else None,
        provider_name=config.resolve_provider_name(model),
    )


class Agent:
    """Small embeddable wrapper around AgentLoop for direct use in Python."""

    def __init__(
        self,
        config: Config | None = None,
        *,
        provider: LLMProvider | None = None,
        conversations: ConversationStore | None = None,
        profiles: ProfileStore | None = None,
        tools: ToolRegistry | None = None,
        metrics: MetricsStore | None = None,
    ):
        self.config = config or load_config()
        defaults = self.config.agent

        if conversations is None or profiles is None:
            built_conversations, built_profiles = build_stores(self.config)
            conversations = conversations if conversations is not None else built_conversations
            profiles = profiles if profiles is not None else built_profiles
        self.conversations = conversations
        self.profiles = profiles

        if metrics is None and self.config.metrics.enabled:
            metrics = MetricsStore(self.config.metrics_path)

        self.loop = AgentLoop(
            provider=provider or build_provider(self.config),
            tools=tools if tools is not None else build_registry(self.config, profiles),
            conversations=conversations,
            profiles=profiles,
            model=defaults.model,
            fallback_models=defaults.fallback_models,
            max_iterations=defaults.max_iterations,
            history_limit=defaults.history_limit,
            max_tokens=defaults.max_tokens,
            temperature=defaults.temperature,
            llm_timeout=defaults.llm_timeout_seconds,
            tool_timeout=defaults.tool_timeout_seconds,
            serialize_per_user=defaults.serialize_per_user,
            context=ContextBuilder(
                assistant_name=defaults.assistant_name,
                default_timezone=defaults.timezone,
            ),
            metrics=metrics,
        )

    async def handle_message(self, user_id: str, text: str) -> str:
        return await self.loop.handle_message(user_id, text)

    async def ask(self, content: str, *, user_id: str = "cli") -> str:
        """Process one direct message through the agent."""
        return await self.loop.handle_message(user_id, content)

    def ask_sync(self, content: str, *, user_id: str = "cli") -> str:
        """Sync wrapper for ask()."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(self.ask(content, user_id=user_id))
        raise RuntimeError("ask_sync() cannot run inside an active event loop; use await ask(...).")
