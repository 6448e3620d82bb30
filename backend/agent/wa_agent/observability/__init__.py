"""Observability helpers."""

from wa_agent.observability.metrics import MetricsStore

__all__ = ["MetricsStore"]
