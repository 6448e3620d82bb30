"""Conversation memory and profile persistence."""

from wa_agent.session.memory import InMemoryConversationStore, InMemoryProfileStore
from wa_agent.session.sqlite import SqliteConversationStore, SqliteProfileStore
from wa_agent.session.store import (
    ConversationStore,
    HistoryPolicy,
    ProfileStore,
    Turn,
    UserProfile,
)

__all__ = [
    "ConversationStore",
    "HistoryPolicy",
    "InMemoryConversationStore",
    "InMemoryProfileStore",
    "ProfileStore",
    "SqliteConversationStore",
    "SqliteProfileStore",
    "Turn",
    "UserProfile",
]
