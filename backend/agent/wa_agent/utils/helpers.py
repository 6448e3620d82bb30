"""Small filesystem and text helpers shared across modules."""

import os
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, returning it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Resolve the active data directory (WA_AGENT_DATA_DIR or ~/.wa-agent)."""
    override = os.environ.get("WA_AGENT_DATA_DIR", "").strip()
    if override:
        return ensure_dir(Path(override).expanduser())
    return ensure_dir(Path.home() / ".wa-agent")


def truncate_text(text: str, limit: int, marker: str = "...[truncated]") -> str:
    """Cut text to at most `limit` characters, marking the cut."""
    value = str(text or "")
    if limit <= 0 or len(value) <= limit:
        return value
    return value[:limit] + marker
