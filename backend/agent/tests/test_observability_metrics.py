import json
from datetime import datetime, timedelta, timezone

from wa_agent.observability.metrics import MetricsStore


def test_metrics_snapshot_aggregates_calls(tmp_path):
    store = MetricsStore(tmp_path / "metrics" / "events.jsonl")

    assert store.record_llm_call(model="openai/gpt-4o-mini", success=True, latency_ms=120, prompt_tokens=50)
    store.record_llm_call(model="openai/gpt-4o-mini", success=False, latency_ms=900, error="429 rate limit")
    store.record_tool_call(tool="get_calendar_events", success=True, latency_ms=80)
    store.record_tool_call(tool="send_email", success=False, latency_ms=40, attempts=3, retry_kind="network")
    store.record_message(outcome="done", iterations=2, tool_calls=1, latency_ms=1500)
    store.record_message(outcome="aborted", iterations=5, tool_calls=5, latency_ms=4000)

    snapshot = store.snapshot(hours=24)

    assert snapshot["llm"]["calls"] == 2
    assert snapshot["llm"]["success_rate"] == 50.0
    assert snapshot["llm"]["prompt_tokens"] == 50
    assert snapshot["tools"]["by_tool"]["send_email"] == {"calls": 1, "errors": 1}
    assert snapshot["tools"]["success_rate"] == 50.0
    assert snapshot["messages"]["outcomes"] == {"done": 1, "aborted": 1}
    assert snapshot["messages"]["count"] == 2


def test_load_events_skips_old_and_malformed_lines(tmp_path):
    path = tmp_path / "events.jsonl"
    store = MetricsStore(path)
    old = (datetime.now(timezone.utc) - timedelta(hours=48)).isoformat()
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps({"type": "message", "outcome": "done", "ts": old}) + "\n")
        handle.write("not-json\n")
        handle.write("[1, 2]\n")
    store.record_message(outcome="errored", iterations=1, tool_calls=0, latency_ms=10)

    events = store.load_events(hours=24)

    assert [e["outcome"] for e in events] == ["errored"]


def test_empty_store_snapshot(tmp_path):
    snapshot = MetricsStore(tmp_path / "none.jsonl").snapshot()

    assert snapshot["llm"]["calls"] == 0
    assert snapshot["llm"]["success_rate"] == 0.0
    assert snapshot["messages"]["outcomes"] == {}
