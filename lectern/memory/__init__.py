"""Conversation memory: history stores, summaries and compaction."""

from lectern.memory.conversation import ConversationMemory, MemoryContext
from lectern.memory.jobs import CompactionJobs
from lectern.memory.store import (
    ConversationStore,
    InMemoryConversationStore,
    RedisConversationStore,
    Summary,
)

__all__ = [
    "CompactionJobs",
    "ConversationMemory",
    "ConversationStore",
    "InMemoryConversationStore",
    "MemoryContext",
    "RedisConversationStore",
    "Summary",
]
