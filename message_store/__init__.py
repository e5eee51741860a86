"""Persistence and similarity retrieval for conversation turns."""

from .base import ROLE_ASSISTANT, ROLE_USER, Message, MessageStore, StoreError
from .memory import InMemoryMessageStore
from .search import nearest_messages, rank_by_distance
from .sql import SQLMessageStore

__all__ = [
    "Message",
    "MessageStore",
    "StoreError",
    "ROLE_USER",
    "ROLE_ASSISTANT",
    "InMemoryMessageStore",
    "SQLMessageStore",
    "nearest_messages",
    "rank_by_distance",
]
