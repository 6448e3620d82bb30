"""Utility helpers."""

from wa_agent.utils.helpers import ensure_dir, get_data_path, truncate_text

__all__ = ["ensure_dir", "get_data_path", "truncate_text"]
