"""Agent core module."""

from wa_agent.agent.context import ContextBuilder
from wa_agent.agent.loop import (
    FAILURE_MESSAGE,
    TASK_TOO_COMPLEX_MESSAGE,
    AgentLoop,
    LoopState,
    MessageOutcome,
)
from wa_agent.agent.summarizer import ResultSummarizer

__all__ = [
    "AgentLoop",
    "ContextBuilder",
    "FAILURE_MESSAGE",
    "LoopState",
    "MessageOutcome",
    "ResultSummarizer",
    "TASK_TOO_COMPLEX_MESSAGE",
]
