"""In-process store backends (tests, CLI dry runs)."""

from __future__ import annotations

from collections import defaultdict

from wa_agent.session.store import (
    ConversationStore,
    HistoryPolicy,
    ProfileStore,
    Turn,
    UserProfile,
)


class InMemoryConversationStore(ConversationStore):
    """Keeps turns in per-user lists; archive mode keeps evicted turns in a side list."""

    def __init__(self, policy: HistoryPolicy | None = None):
        super().__init__(policy)
        self._turns: dict[str, list[Turn]] = defaultdict(list)
        self.archive: dict[str, list[Turn]] = defaultdict(list)

    async def load_recent(self, user_id: str, limit: int | None = None) -> list[Turn]:
        await self.expire(user_id)
        count = self._limit(limit)
        if count == 0:
            return []
        return list(self._turns.get(user_id, [])[-count:])

    async def append_exchange(self, user_id: str, turns: list[Turn]) -> None:
        self._turns[user_id].extend(turns)
        await self.trim(user_id)

    async def trim(self, user_id: str, limit: int | None = None) -> int:
        history = self._turns.get(user_id, [])
        keep = self._limit(limit)
        overflow = len(history) - keep
        if overflow <= 0:
            return 0
        evicted, kept = history[:overflow], history[overflow:]
        if self.policy.evicted == "archive":
            self.archive[user_id].extend(evicted)
        self._turns[user_id] = kept
        return overflow

    async def expire(self, user_id: str, ttl_seconds: int | None = None) -> bool:
        history = self._turns.get(user_id)
        if not history:
            return False
        policy = self.policy
        if ttl_seconds is not None:
            policy = HistoryPolicy(limit=policy.limit, ttl_seconds=ttl_seconds, evicted=policy.evicted)
        if not policy.is_expired(history[-1].timestamp):
            return False
        if policy.evicted == "archive":
            self.archive[user_id].extend(history)
        await self.clear(user_id)
        return True

    async def clear(self, user_id: str) -> None:
        self._turns.pop(user_id, None)


class InMemoryProfileStore(ProfileStore):
    """Dict-backed profile records."""

    def __init__(self) -> None:
        self._profiles: dict[str, UserProfile] = {}

    async def get(self, user_id: str) -> UserProfile | None:
        return self._profiles.get(user_id)

    async def upsert(self, user_id: str, **fields: str | None) -> UserProfile:
        current = self._profiles.get(user_id) or UserProfile(user_id=user_id)
        updated = current.merged(**fields)
        self._profiles[user_id] = updated
        return updated
