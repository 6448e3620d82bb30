"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from wa_agent.utils.helpers import get_data_path


def _default_database() -> str:
    """Default SQLite file under active data directory."""
    return str(get_data_path() / "state" / "conversations.db")


class AgentDefaults(BaseModel):
    """Orchestration loop configuration."""
    model: str = "openai/gpt-4o-mini"
    fallback_models: list[str] = Field(default_factory=list)
    max_tokens: int = 1024
    temperature: float = 0.3
    max_iterations: int = 5  # Model round trips before aborting
    history_limit: int = 10  # Persisted turns replayed per message
    history_ttl_seconds: int | None = None  # Inactivity window; None disables expiry
    evicted_turns: str = "discard"  # discard | archive
    llm_timeout_seconds: float = 60.0
    tool_timeout_seconds: float = 30.0
    serialize_per_user: bool = True
    timezone: str = "UTC"
    assistant_name: str = "Asistente"


class ProviderConfig(BaseModel):
    """LLM provider credentials."""
    api_key: str = ""
    api_base: str | None = None
    extra_headers: dict[str, str] | None = None


class ProvidersConfig(BaseModel):
    """Configuration for LLM providers."""
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    openrouter: ProviderConfig = Field(default_factory=ProviderConfig)
    gemini: ProviderConfig = Field(default_factory=ProviderConfig)
    groq: ProviderConfig = Field(default_factory=ProviderConfig)


class WhatsAppConfig(BaseModel):
    """WhatsApp Cloud API channel configuration."""
    enabled: bool = True
    token: str = ""  # Permanent or system-user access token
    phone_number_id: str = ""
    verify_token: str = ""  # Echoed back during webhook subscription
    app_secret: str = ""  # Enables X-Hub-Signature-256 checks when set
    api_version: str = "v19.0"
    allow_from: list[str] = Field(default_factory=list)  # Allowed phone numbers


class GoogleWorkspaceConfig(BaseModel):
    """Google Calendar/Gmail integration config."""
    client_id: str = ""
    client_secret: str = ""
    refresh_token: str = ""
    access_token: str = ""
    calendar_id: str = "primary"


class TranscriptionConfig(BaseModel):
    """Voice note transcription."""
    groq_api_key: str = ""
    model: str = "whisper-large-v3-turbo"


class GatewayConfig(BaseModel):
    """Webhook server configuration."""
    host: str = "0.0.0.0"
    port: int = 3000
    path: str = "/webhook"


class StorageConfig(BaseModel):
    """Conversation/profile persistence."""
    backend: str = "sqlite"  # sqlite | memory
    database: str = Field(default_factory=_default_database)


class MetricsConfig(BaseModel):
    """JSONL metrics output."""
    enabled: bool = True
    path: str = ""


class Config(BaseSettings):
    """Root configuration for wa-agent."""
    agent: AgentDefaults = Field(default_factory=AgentDefaults)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    whatsapp: WhatsAppConfig = Field(default_factory=WhatsAppConfig)
    google: GoogleWorkspaceConfig = Field(default_factory=GoogleWorkspaceConfig)
    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    @property
    def database_path(self) -> Path:
        """Get expanded SQLite path."""
        return Path(self.storage.database).expanduser()

    @property
    def metrics_path(self) -> Path:
        """Get metrics JSONL path."""
        if self.metrics.path:
            return Path(self.metrics.path).expanduser()
        return get_data_path() / "state" / "metrics" / "events.jsonl"

    def _provider_map(self) -> dict[str, ProviderConfig]:
        """Map provider names to config objects."""
        return {
            "openrouter": self.providers.openrouter,
            "anthropic": self.providers.anthropic,
            "openai": self.providers.openai,
            "gemini": self.providers.gemini,
            "groq": self.providers.groq,
        }

    def resolve_provider_name(self, model: str | None = None) -> str:
        """Resolve provider name from model prefix/keywords, falling back to any keyed provider."""
        lowered = (model or self.agent.model).lower().strip()
        keyword_hints = (
            ("openrouter", "openrouter"),
            ("anthropic", "anthropic"),
            ("claude", "anthropic"),
            ("openai", "openai"),
            ("gpt", "openai"),
            ("gemini", "gemini"),
            ("groq", "groq"),
        )
        providers = self._provider_map()
        for keyword, provider_name in keyword_hints:
            if keyword in lowered and providers[provider_name].api_key:
                return provider_name
        for provider_name, provider_cfg in providers.items():
            if provider_cfg.api_key:
                return provider_name
        return "unresolved"

    def get_provider(self, model: str | None = None) -> ProviderConfig | None:
        """Get matched provider config for a model."""
        return self._provider_map().get(self.resolve_provider_name(model))

    def get_api_key(self, model: str | None = None) -> str | None:
        """Get API key for the given model."""
        provider = self.get_provider(model)
        return provider.api_key if provider and provider.api_key else None

    def get_api_base(self, model: str | None = None) -> str | None:
        """Get API base URL for the given model."""
        provider = self.get_provider(model)
        return provider.api_base if provider else None

    model_config = SettingsConfigDict(
        env_prefix="WA_AGENT_",
        env_nested_delimiter="__",
    )
