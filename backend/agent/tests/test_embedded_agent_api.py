import asyncio
import json
from typing import Any

import pytest
from typer.testing import CliRunner

from wa_agent import __version__
from wa_agent.agent.api import Agent, build_provider, build_registry, build_stores
from wa_agent.cli.commands import app
from wa_agent.config.schema import Config
from wa_agent.providers.base import LLMProvider, LLMResponse
from wa_agent.session.memory import InMemoryConversationStore, InMemoryProfileStore
from wa_agent.session.sqlite import SqliteConversationStore, SqliteProfileStore
from wa_agent.session.store import Turn

runner = CliRunner()


class DummyProvider(LLMProvider):
    def __init__(self):
        super().__init__()
        self.calls: list[list[dict[str, Any]]] = []

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 1024,
        temperature: float = 0.3,
        tool_choice: str = "auto",
    ) -> LLMResponse:
        self.calls.append(messages)
        return LLMResponse(content="embedded-ok")

    def get_default_model(self) -> str:
        return "dummy-model"


def _config(tmp_path, monkeypatch, backend: str = "memory") -> Config:
    monkeypatch.setenv("WA_AGENT_DATA_DIR", str(tmp_path / "data"))
    config = Config()
    config.storage.backend = backend
    config.metrics.enabled = False
    return config


def test_embedded_agent_ask_sync(tmp_path, monkeypatch):
    provider = DummyProvider()
    agent = Agent(_config(tmp_path, monkeypatch), provider=provider)

    assert agent.ask_sync("hola desde python") == "embedded-ok"
    assert provider.calls[0][-1] == {"role": "user", "content": "hola desde python"}
    turns = asyncio.run(agent.conversations.load_recent("cli"))
    assert [t.role for t in turns] == ["user", "assistant"]


def test_ask_sync_rejects_running_loop(tmp_path, monkeypatch):
    agent = Agent(_config(tmp_path, monkeypatch), provider=DummyProvider())

    async def inside_loop():
        agent.ask_sync("hola")

    with pytest.raises(RuntimeError, match="active event loop"):
        asyncio.run(inside_loop())


def test_agent_reads_loop_settings_from_config(tmp_path, monkeypatch):
    config = _config(tmp_path, monkeypatch)
    config.agent.max_iterations = 3
    config.agent.fallback_models = ["openai/gpt-4o", "openai/gpt-4o-mini"]

    agent = Agent(config, provider=DummyProvider())

    assert agent.loop.max_iterations == 3
    assert agent.loop.model_chain == ["openai/gpt-4o-mini", "openai/gpt-4o"]
    assert isinstance(agent.conversations, InMemoryConversationStore)
    assert agent.loop.metrics is None


def test_build_stores_backends(tmp_path, monkeypatch):
    config = _config(tmp_path, monkeypatch, backend="sqlite")

    conversations, profiles = build_stores(config)
    assert isinstance(conversations, SqliteConversationStore)
    assert isinstance(profiles, SqliteProfileStore)

    config.storage.backend = "Memory"
    conversations, profiles = build_stores(config)
    assert isinstance(profiles, InMemoryProfileStore)

    config.storage.backend = "redis"
    with pytest.raises(ValueError, match="Unknown storage backend"):
        build_stores(config)


def test_build_registry_exposes_all_tools(tmp_path, monkeypatch):
    config = _config(tmp_path, monkeypatch)

    registry = build_registry(config, InMemoryProfileStore())

    assert set(registry.tool_names) == {
        "save_user_fact",
        "get_user_fact",
        "get_calendar_events",
        "create_calendar_event",
        "update_calendar_event",
        "search_emails",
        "get_email_details",
        "send_email",
        "create_draft",
        "modify_email_status",
    }


def test_build_provider_requires_api_key(tmp_path, monkeypatch):
    with pytest.raises(ValueError, match="No API key configured"):
        build_provider(_config(tmp_path, monkeypatch))


def test_cli_version():
    result = runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_cli_group_without_subcommand_shows_help(tmp_path, monkeypatch):
    monkeypatch.setenv("WA_AGENT_DATA_DIR", str(tmp_path / "data"))

    result = runner.invoke(app, ["history"])

    assert result.exit_code == 0
    assert "Usage: wa-agent history" in result.stdout


def test_cli_profile_and_history_show(tmp_path, monkeypatch):
    config = _config(tmp_path, monkeypatch, backend="sqlite")
    conversations, profiles = build_stores(config)
    asyncio.run(profiles.upsert("34600111222", name="Ana", timezone="Europe/Madrid"))
    asyncio.run(
        conversations.append_exchange(
            "34600111222",
            [Turn(role="user", content="hola"), Turn(role="assistant", content="¡Hola Ana!")],
        )
    )

    profile = runner.invoke(app, ["profile", "show", "34600111222", "--json"])
    history = runner.invoke(app, ["history", "show", "34600111222"])
    empty = runner.invoke(app, ["history", "show", "nobody"])

    assert profile.exit_code == 0
    data = json.loads(profile.stdout)
    assert data["name"] == "Ana"
    assert data["timezone"] == "Europe/Madrid"
    assert history.exit_code == 0
    assert "¡Hola Ana!" in history.stdout
    assert "No stored history for nobody." in empty.stdout


def test_cli_agent_without_key_fails_with_hint(tmp_path, monkeypatch):
    monkeypatch.setenv("WA_AGENT_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("WA_AGENT_STORAGE__BACKEND", "memory")

    result = runner.invoke(app, ["agent", "-m", "hola"])

    assert result.exit_code == 1
    assert "No API key configured" in result.stdout


def test_cli_metrics_json(tmp_path, monkeypatch):
    monkeypatch.setenv("WA_AGENT_DATA_DIR", str(tmp_path / "data"))

    result = runner.invoke(app, ["metrics", "--json"])

    assert result.exit_code == 0
    assert json.loads(result.stdout)["llm"]["calls"] == 0


def test_explicit_empty_registry_is_kept(tmp_path, monkeypatch):
    from wa_agent.agent.tools.registry import ToolRegistry

    tools = ToolRegistry()
    conversations = InMemoryConversationStore()
    profiles = InMemoryProfileStore()

    agent = Agent(
        _config(tmp_path, monkeypatch, backend="sqlite"),
        provider=DummyProvider(),
        conversations=conversations,
        profiles=profiles,
        tools=tools,
    )

    assert agent.loop.tools is tools
    assert agent.loop.tools.tool_names == []
    assert agent.conversations is conversations
    assert agent.profiles is profiles
