import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from wa_agent.session.memory import InMemoryConversationStore, InMemoryProfileStore
from wa_agent.session.sqlite import SqliteConversationStore, SqliteProfileStore
from wa_agent.session.store import HistoryPolicy, Turn, UserProfile


def _exchange(index: int, at: datetime | None = None) -> list[Turn]:
    ts = at or datetime.now(timezone.utc)
    return [
        Turn(role="user", content=f"q{index}", timestamp=ts),
        Turn(role="assistant", content=f"a{index}", timestamp=ts),
    ]


def _conversation_stores(tmp_path, policy: HistoryPolicy):
    return [
        InMemoryConversationStore(policy),
        SqliteConversationStore(tmp_path / "db" / "conversations.db", policy),
    ]


def _profile_stores(tmp_path):
    return [InMemoryProfileStore(), SqliteProfileStore(tmp_path / "profiles.db")]


def test_turn_rejects_unknown_role():
    with pytest.raises(ValueError):
        Turn(role="system", content="x")


def test_history_policy_validation():
    with pytest.raises(ValueError):
        HistoryPolicy(limit=0)
    with pytest.raises(ValueError):
        HistoryPolicy(ttl_seconds=0)
    with pytest.raises(ValueError):
        HistoryPolicy(evicted="compress")


def test_window_keeps_most_recent_turns_in_order(tmp_path):
    for store in _conversation_stores(tmp_path, HistoryPolicy(limit=4)):
        for index in range(5):
            asyncio.run(store.append_exchange("u1", _exchange(index)))

        turns = asyncio.run(store.load_recent("u1", 10))
        assert [t.content for t in turns] == ["q3", "a3", "q4", "a4"], type(store).__name__
        assert [t.role for t in turns] == ["user", "assistant", "user", "assistant"]

        two = asyncio.run(store.load_recent("u1", 2))
        assert [t.content for t in two] == ["q4", "a4"]
        assert asyncio.run(store.load_recent("u1", 0)) == []


def test_same_timestamp_turns_keep_insertion_order(tmp_path):
    ts = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
    for store in _conversation_stores(tmp_path, HistoryPolicy(limit=10)):
        asyncio.run(store.append_exchange("u1", _exchange(1, ts)))
        asyncio.run(store.append_exchange("u1", _exchange(2, ts)))

        turns = asyncio.run(store.load_recent("u1"))
        assert [t.content for t in turns] == ["q1", "a1", "q2", "a2"]


def test_users_are_isolated(tmp_path):
    for store in _conversation_stores(tmp_path, HistoryPolicy(limit=10)):
        asyncio.run(store.append_exchange("u1", _exchange(1)))
        asyncio.run(store.append_exchange("u2", _exchange(2)))
        asyncio.run(store.clear("u1"))

        assert asyncio.run(store.load_recent("u1")) == []
        assert [t.content for t in asyncio.run(store.load_recent("u2"))] == ["q2", "a2"]


def test_ttl_expiry_empties_stale_history(tmp_path):
    stale = datetime.now(timezone.utc) - timedelta(hours=2)
    for store in _conversation_stores(tmp_path, HistoryPolicy(limit=10, ttl_seconds=3600)):
        asyncio.run(store.append_exchange("stale", _exchange(1, stale)))
        asyncio.run(store.append_exchange("fresh", _exchange(2)))

        assert asyncio.run(store.load_recent("stale")) == []
        assert len(asyncio.run(store.load_recent("fresh"))) == 2


def test_expire_with_explicit_ttl(tmp_path):
    old = datetime.now(timezone.utc) - timedelta(minutes=10)
    for store in _conversation_stores(tmp_path, HistoryPolicy(limit=10)):
        asyncio.run(store.append_exchange("u1", _exchange(1, old)))

        assert asyncio.run(store.expire("u1", ttl_seconds=3600)) is False
        assert asyncio.run(store.expire("u1", ttl_seconds=60)) is True
        assert asyncio.run(store.load_recent("u1")) == []


def test_archive_mode_keeps_evicted_turns(tmp_path):
    memory = InMemoryConversationStore(HistoryPolicy(limit=2, evicted="archive"))
    sqlite = SqliteConversationStore(tmp_path / "archive.db", HistoryPolicy(limit=2, evicted="archive"))

    for store in (memory, sqlite):
        for index in range(3):
            asyncio.run(store.append_exchange("u1", _exchange(index)))
        assert [t.content for t in asyncio.run(store.load_recent("u1"))] == ["q2", "a2"]

    assert [t.content for t in memory.archive["u1"]] == ["q0", "a0", "q1", "a1"]
    assert [t.content for t in asyncio.run(sqlite.archived("u1"))] == ["q0", "a0", "q1", "a1"]


def test_sqlite_history_survives_reopen(tmp_path):
    db_path = tmp_path / "state" / "conversations.db"
    store = SqliteConversationStore(db_path)
    asyncio.run(
        store.append_exchange(
            "u1",
            [
                Turn(role="user", content="¿Qué tengo hoy?"),
                Turn(role="tool", content='{"count": 0}', tool_call_id="c1", tool_name="get_calendar_events"),
                Turn(role="assistant", content="Nada."),
            ],
        )
    )

    reopened = SqliteConversationStore(db_path)
    turns = asyncio.run(reopened.load_recent("u1"))

    assert [t.role for t in turns] == ["user", "tool", "assistant"]
    assert turns[1].tool_call_id == "c1"
    assert turns[1].tool_name == "get_calendar_events"
    assert turns[0].timestamp.tzinfo is not None


def test_profile_merge_keeps_unspecified_fields(tmp_path):
    for store in _profile_stores(tmp_path):
        assert asyncio.run(store.get("u1")) is None

        asyncio.run(store.upsert("u1", name="Ana", timezone="Europe/Madrid"))
        updated = asyncio.run(store.upsert("u1", preferences="mañanas", name=None))

        assert updated.facts() == {
            "name": "Ana",
            "preferences": "mañanas",
            "timezone": "Europe/Madrid",
            "notes": None,
        }, type(store).__name__
        assert asyncio.run(store.get("u1")).facts() == updated.facts()
        assert updated.updated_at is not None


def test_profile_merge_replaces_given_fields(tmp_path):
    for store in _profile_stores(tmp_path):
        asyncio.run(store.upsert("u1", name="Ana"))
        asyncio.run(store.upsert("u1", name="Ana María"))

        assert asyncio.run(store.get("u1")).name == "Ana María"


def test_user_profile_merged_ignores_unknown_keys():
    profile = UserProfile(user_id="u1", name="Ana")

    merged = profile.merged(name=None, notes="vegetariana", age="30")

    assert merged.name == "Ana"
    assert merged.notes == "vegetariana"
    assert not hasattr(merged, "age")
