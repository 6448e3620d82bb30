"""SQLite-backed conversation and profile stores."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from loguru import logger

from wa_agent.session.store import (
    PROFILE_FIELDS,
    ConversationStore,
    HistoryPolicy,
    ProfileStore,
    Turn,
    UserProfile,
)
from wa_agent.utils.helpers import ensure_dir

SCHEMA = """
CREATE TABLE IF NOT EXISTS turns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    ts TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    tool_call_id TEXT,
    tool_name TEXT
);
CREATE INDEX IF NOT EXISTS idx_turns_user_ts ON turns (user_id, ts);
CREATE TABLE IF NOT EXISTS turns_archive (
    id INTEGER PRIMARY KEY,
    user_id TEXT NOT NULL,
    ts TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    tool_call_id TEXT,
    tool_name TEXT,
    archived_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS profiles (
    user_id TEXT PRIMARY KEY,
    name TEXT,
    preferences TEXT,
    timezone TEXT,
    notes TEXT,
    updated_at TEXT NOT NULL
);
"""

_TURN_COLUMNS = "id, user_id, ts, role, content, tool_call_id, tool_name"


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _connect(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn


def init_database(db_path: Path) -> None:
    """Create tables if missing."""
    ensure_dir(db_path.parent)
    conn = _connect(db_path)
    try:
        conn.executescript(SCHEMA)
        conn.commit()
    finally:
        conn.close()


class SqliteConversationStore(ConversationStore):
    """
    Turn history in a `turns` table ordered by (ts, id).

    Every public method runs its blocking SQLite work in a worker thread.
    """

    def __init__(self, db_path: Path, policy: HistoryPolicy | None = None):
        super().__init__(policy)
        self.db_path = db_path
        init_database(db_path)

    async def load_recent(self, user_id: str, limit: int | None = None) -> list[Turn]:
        await self.expire(user_id)
        count = self._limit(limit)
        if count == 0:
            return []
        return await asyncio.to_thread(self._load_recent_sync, user_id, count)

    async def append_exchange(self, user_id: str, turns: list[Turn]) -> None:
        if not turns:
            return
        await asyncio.to_thread(self._append_sync, user_id, turns)
        evicted = await self.trim(user_id)
        if evicted:
            logger.debug(f"Trimmed {evicted} turn(s) for {user_id}")

    async def trim(self, user_id: str, limit: int | None = None) -> int:
        return await asyncio.to_thread(self._trim_sync, user_id, self._limit(limit))

    async def expire(self, user_id: str, ttl_seconds: int | None = None) -> bool:
        ttl = ttl_seconds if ttl_seconds is not None else self.policy.ttl_seconds
        if ttl is None:
            return False
        last = await asyncio.to_thread(self._last_activity_sync, user_id)
        policy = HistoryPolicy(limit=self.policy.limit, ttl_seconds=ttl, evicted=self.policy.evicted)
        if not policy.is_expired(last):
            return False
        await asyncio.to_thread(self._trim_sync, user_id, 0)
        logger.info(f"History for {user_id} expired after {ttl}s of inactivity")
        return True

    async def clear(self, user_id: str) -> None:
        await asyncio.to_thread(self._clear_sync, user_id)

    async def archived(self, user_id: str) -> list[Turn]:
        """Return archived turns, oldest first."""
        return await asyncio.to_thread(self._archived_sync, user_id)

    def _load_recent_sync(self, user_id: str, count: int) -> list[Turn]:
        conn = _connect(self.db_path)
        try:
            rows = conn.execute(
                f"SELECT {_TURN_COLUMNS} FROM turns WHERE user_id = ? "
                "ORDER BY ts DESC, id DESC LIMIT ?",
                (user_id, count),
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_turn(row) for row in reversed(rows)]

    def _append_sync(self, user_id: str, turns: list[Turn]) -> None:
        conn = _connect(self.db_path)
        try:
            with conn:
                conn.executemany(
                    "INSERT INTO turns (user_id, ts, role, content, tool_call_id, tool_name) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    [
                        (
                            user_id,
                            _iso(turn.timestamp),
                            turn.role,
                            turn.content,
                            turn.tool_call_id,
                            turn.tool_name,
                        )
                        for turn in turns
                    ],
                )
        finally:
            conn.close()

    def _trim_sync(self, user_id: str, keep: int) -> int:
        keep_clause = (
            "SELECT id FROM turns WHERE user_id = ? ORDER BY ts DESC, id DESC LIMIT ?"
        )
        conn = _connect(self.db_path)
        try:
            with conn:
                if self.policy.evicted == "archive":
                    conn.execute(
                        f"INSERT OR REPLACE INTO turns_archive ({_TURN_COLUMNS}, archived_at) "
                        f"SELECT {_TURN_COLUMNS}, ? FROM turns "
                        f"WHERE user_id = ? AND id NOT IN ({keep_clause})",
                        (_iso(datetime.now(timezone.utc)), user_id, user_id, keep),
                    )
                cursor = conn.execute(
                    f"DELETE FROM turns WHERE user_id = ? AND id NOT IN ({keep_clause})",
                    (user_id, user_id, keep),
                )
                return max(0, cursor.rowcount)
        finally:
            conn.close()

    def _last_activity_sync(self, user_id: str) -> datetime | None:
        conn = _connect(self.db_path)
        try:
            row = conn.execute(
                "SELECT MAX(ts) AS last_ts FROM turns WHERE user_id = ?", (user_id,)
            ).fetchone()
        finally:
            conn.close()
        return _parse_iso(row["last_ts"]) if row else None

    def _clear_sync(self, user_id: str) -> None:
        conn = _connect(self.db_path)
        try:
            with conn:
                conn.execute("DELETE FROM turns WHERE user_id = ?", (user_id,))
        finally:
            conn.close()

    def _archived_sync(self, user_id: str) -> list[Turn]:
        conn = _connect(self.db_path)
        try:
            rows = conn.execute(
                f"SELECT {_TURN_COLUMNS} FROM turns_archive WHERE user_id = ? ORDER BY ts, id",
                (user_id,),
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_turn(row) for row in rows]

    @staticmethod
    def _row_to_turn(row: sqlite3.Row) -> Turn:
        return Turn(
            role=row["role"],
            content=row["content"],
            tool_call_id=row["tool_call_id"],
            tool_name=row["tool_name"],
            timestamp=_parse_iso(row["ts"]) or datetime.now(timezone.utc),
        )


class SqliteProfileStore(ProfileStore):
    """Profile rows upserted with COALESCE so absent fields never erase stored ones."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        init_database(db_path)

    async def get(self, user_id: str) -> UserProfile | None:
        return await asyncio.to_thread(self._get_sync, user_id)

    async def upsert(self, user_id: str, **fields: str | None) -> UserProfile:
        values = {key: fields.get(key) for key in PROFILE_FIELDS}
        await asyncio.to_thread(self._upsert_sync, user_id, values)
        profile = await self.get(user_id)
        return profile or UserProfile(user_id=user_id, **values)

    def _get_sync(self, user_id: str) -> UserProfile | None:
        conn = _connect(self.db_path)
        try:
            row = conn.execute(
                "SELECT user_id, name, preferences, timezone, notes, updated_at "
                "FROM profiles WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return UserProfile(
            user_id=row["user_id"],
            name=row["name"],
            preferences=row["preferences"],
            timezone=row["timezone"],
            notes=row["notes"],
            updated_at=_parse_iso(row["updated_at"]),
        )

    def _upsert_sync(self, user_id: str, values: dict[str, str | None]) -> None:
        columns = ", ".join(PROFILE_FIELDS)
        placeholders = ", ".join("?" for _ in PROFILE_FIELDS)
        merges = ", ".join(f"{col} = COALESCE(excluded.{col}, profiles.{col})" for col in PROFILE_FIELDS)
        conn = _connect(self.db_path)
        try:
            with conn:
                conn.execute(
                    f"INSERT INTO profiles (user_id, {columns}, updated_at) "
                    f"VALUES (?, {placeholders}, ?) "
                    f"ON CONFLICT(user_id) DO UPDATE SET {merges}, updated_at = excluded.updated_at",
                    (
                        user_id,
                        *(values[col] for col in PROFILE_FIELDS),
                        _iso(datetime.now(timezone.utc)),
                    ),
                )
        finally:
            conn.close()
