"""Conversation history and profile store contracts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

TURN_ROLES = ("user", "assistant", "tool")
PROFILE_FIELDS = ("name", "preferences", "timezone", "notes")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Turn:
    """One role-tagged message unit in a conversation."""

    role: str
    content: str
    tool_call_id: str | None = None
    tool_name: str | None = None
    timestamp: datetime = field(default_factory=_now)

    def __post_init__(self) -> None:
        if self.role not in TURN_ROLES:
            raise ValueError(f"Invalid turn role: {self.role!r}")

    def to_message(self) -> dict[str, Any]:
        """Convert to an LLM chat message."""
        msg: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_call_id:
            msg["tool_call_id"] = self.tool_call_id
        if self.tool_name:
            msg["name"] = self.tool_name
        return msg


@dataclass
class UserProfile:
    """Small set of durable per-user facts."""

    user_id: str
    name: str | None = None
    preferences: str | None = None
    timezone: str | None = None
    notes: str | None = None
    updated_at: datetime | None = None

    def facts(self) -> dict[str, str | None]:
        return {key: getattr(self, key) for key in PROFILE_FIELDS}

    def merged(self, **updates: str | None) -> UserProfile:
        """Return a copy where every non-None update replaces the stored value."""
        data = asdict(self)
        for key, value in updates.items():
            if key in PROFILE_FIELDS and value is not None:
                data[key] = value
        data["updated_at"] = _now()
        return UserProfile(**data)


@dataclass(frozen=True)
class HistoryPolicy:
    """
    Retention policy for persisted turns.

    `limit` caps the stored window (oldest dropped first). When `ttl_seconds`
    is set, a conversation idle for longer than the TTL loads as empty.
    `evicted` selects whether trimmed turns are deleted or archived.
    """

    limit: int = 10
    ttl_seconds: int | None = None
    evicted: str = "discard"

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError("History limit must be >= 1")
        if self.ttl_seconds is not None and self.ttl_seconds <= 0:
            raise ValueError("History TTL must be positive")
        if self.evicted not in {"discard", "archive"}:
            raise ValueError(f"Unknown eviction mode: {self.evicted!r}")

    def is_expired(self, last_activity: datetime | None, now: datetime | None = None) -> bool:
        if self.ttl_seconds is None or last_activity is None:
            return False
        current = now or _now()
        return (current - last_activity).total_seconds() > self.ttl_seconds


class ConversationStore(ABC):
    """Durable, bounded turn history keyed by user identifier."""

    def __init__(self, policy: HistoryPolicy | None = None):
        self.policy = policy or HistoryPolicy()

    @abstractmethod
    async def load_recent(self, user_id: str, limit: int | None = None) -> list[Turn]:
        """Return up to `limit` most recent turns, oldest first."""

    @abstractmethod
    async def append_exchange(self, user_id: str, turns: list[Turn]) -> None:
        """Append turns in order, then trim to the policy window."""

    @abstractmethod
    async def trim(self, user_id: str, limit: int | None = None) -> int:
        """Drop (or archive) everything but the `limit` newest turns; return count evicted."""

    @abstractmethod
    async def expire(self, user_id: str, ttl_seconds: int | None = None) -> bool:
        """Clear history when idle beyond the TTL; return True when cleared."""

    @abstractmethod
    async def clear(self, user_id: str) -> None:
        """Remove all stored turns for a user."""

    def _limit(self, limit: int | None) -> int:
        return self.policy.limit if limit is None else max(0, int(limit))


class ProfileStore(ABC):
    """Per-user profile records with null-coalescing upserts."""

    @abstractmethod
    async def get(self, user_id: str) -> UserProfile | None:
        """Return the stored profile or None."""

    @abstractmethod
    async def upsert(self, user_id: str, **fields: str | None) -> UserProfile:
        """Merge non-None fields into the profile, creating it if needed."""

