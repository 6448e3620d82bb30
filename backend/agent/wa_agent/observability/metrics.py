"""Lightweight runtime metrics collector backed by JSONL."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from wa_agent.utils.helpers import ensure_dir


def _now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def _to_iso(ts: datetime | None = None) -> str:
    return (ts or _now_utc()).isoformat()


def _parse_iso(value: str | None) -> datetime | None:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    except ValueError:
        return None


def _pct(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return round((numerator / denominator) * 100.0, 2)


def _p95(values: list[float]) -> float:
    if not values:
        return 0.0
    data = sorted(float(v) for v in values)
    index = int(0.95 * (len(data) - 1))
    return round(data[index], 2)


class MetricsStore:
    """Append-only metrics event store with aggregated snapshots."""

    def __init__(self, events_path: Path):
        self.events_path = events_path
        ensure_dir(events_path.parent)

    def _append(self, payload: dict[str, Any]) -> bool:
        record = dict(payload)
        record.setdefault("ts", _to_iso())
        line = json.dumps(record, ensure_ascii=False)
        try:
            with self.events_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
            return True
        except OSError:
            return False

    def record_llm_call(
        self,
        *,
        model: str,
        success: bool,
        latency_ms: float,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        error: str = "",
    ) -> bool:
        return self._append(
            {
                "type": "llm_call",
                "model": (model or "").strip(),
                "success": bool(success),
                "latency_ms": round(float(latency_ms), 2),
                "prompt_tokens": int(prompt_tokens),
                "completion_tokens": int(completion_tokens),
                "error": (error or "").strip()[:500],
            }
        )

    def record_tool_call(
        self,
        *,
        tool: str,
        success: bool,
        latency_ms: float,
        attempts: int = 1,
        retry_kind: str = "",
        error: str = "",
    ) -> bool:
        return self._append(
            {
                "type": "tool_call",
                "tool": (tool or "").strip(),
                "success": bool(success),
                "latency_ms": round(float(latency_ms), 2),
                "attempts": max(1, int(attempts)),
                "retry_kind": (retry_kind or "").strip(),
                "error": (error or "").strip()[:500],
            }
        )

    def record_message(
        self,
        *,
        outcome: str,
        iterations: int,
        tool_calls: int,
        latency_ms: float,
    ) -> bool:
        return self._append(
            {
                "type": "message",
                "outcome": (outcome or "").strip(),
                "iterations": max(0, int(iterations)),
                "tool_calls": max(0, int(tool_calls)),
                "latency_ms": round(float(latency_ms), 2),
            }
        )

    def load_events(self, hours: int = 24) -> list[dict[str, Any]]:
        """Read events newer than `hours`, skipping malformed lines."""
        if not self.events_path.exists():
            return []
        cutoff = _now_utc() - timedelta(hours=max(1, int(hours)))
        events: list[dict[str, Any]] = []
        try:
            lines = self.events_path.read_text(encoding="utf-8").splitlines()
        except OSError:
            return []
        for line in lines:
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(record, dict):
                continue
            ts = _parse_iso(record.get("ts"))
            if ts is None or ts < cutoff:
                continue
            events.append(record)
        return events

    def snapshot(self, hours: int = 24) -> dict[str, Any]:
        """Aggregate recent events into success rates, latency and outcome counts."""
        events = self.load_events(hours)
        llm = [e for e in events if e.get("type") == "llm_call"]
        tools = [e for e in events if e.get("type") == "tool_call"]
        messages = [e for e in events if e.get("type") == "message"]

        outcomes: dict[str, int] = {}
        for item in messages:
            key = str(item.get("outcome", "unknown"))
            outcomes[key] = outcomes.get(key, 0) + 1

        tool_breakdown: dict[str, dict[str, int]] = {}
        for item in tools:
            bucket = tool_breakdown.setdefault(str(item.get("tool", "")), {"calls": 0, "errors": 0})
            bucket["calls"] += 1
            if not item.get("success"):
                bucket["errors"] += 1

        return {
            "window_hours": max(1, int(hours)),
            "generated_at": _to_iso(),
            "llm": {
                "calls": len(llm),
                "success_rate": _pct(sum(1 for e in llm if e.get("success")), len(llm)),
                "latency_p95_ms": _p95([float(e.get("latency_ms", 0.0)) for e in llm]),
                "prompt_tokens": sum(int(e.get("prompt_tokens", 0) or 0) for e in llm),
                "completion_tokens": sum(int(e.get("completion_tokens", 0) or 0) for e in llm),
            },
            "tools": {
                "calls": len(tools),
                "success_rate": _pct(sum(1 for e in tools if e.get("success")), len(tools)),
                "latency_p95_ms": _p95([float(e.get("latency_ms", 0.0)) for e in tools]),
                "by_tool": tool_breakdown,
            },
            "messages": {
                "count": len(messages),
                "outcomes": outcomes,
                "latency_p95_ms": _p95([float(e.get("latency_ms", 0.0)) for e in messages]),
            },
        }
