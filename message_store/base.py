"""Storage contract for conversation turns and their embeddings.

A :class:`MessageStore` owns conversations and the ordered messages that
belong to them.  Messages are append-only: the store assigns identifiers
that increase monotonically within a conversation, and that order is the
turn order.  Retrieval comes in two flavours, a recency window
(:meth:`MessageStore.recent_messages`) and a nearest-neighbour search over
message embeddings (:meth:`MessageStore.similar_messages`).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
VALID_ROLES = frozenset({ROLE_USER, ROLE_ASSISTANT})


class StoreError(RuntimeError):
    """Raised when the underlying storage backend fails."""


@dataclass(frozen=True)
class Message:
    """One stored turn of a conversation."""

    id: int
    conversation_id: int
    role: str
    content: str
    created_at: datetime
    embedding: Optional[Tuple[float, ...]] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
        }


class MessageStore(ABC):
    """Durable, per-conversation record of chat turns."""

    @abstractmethod
    def conversation_exists(self, conversation_id: int) -> bool:
        """Return True when ``conversation_id`` has been created."""

    @abstractmethod
    def create_conversation(self, user_id: Optional[str] = None) -> int:
        """Allocate a new conversation and return its identifier."""

    @abstractmethod
    def append_message(
        self,
        conversation_id: int,
        role: str,
        content: str,
        embedding: Optional[Sequence[float]] = None,
    ) -> int:
        """Atomically store one message and return its identifier."""

    @abstractmethod
    def recent_messages(self, conversation_id: int, limit: int) -> List[Message]:
        """Return the last ``limit`` messages, oldest first."""

    @abstractmethod
    def similar_messages(
        self,
        conversation_id: int,
        query_embedding: Sequence[float],
        top_n: int,
    ) -> List[Message]:
        """Return up to ``top_n`` messages nearest to ``query_embedding``, nearest first."""

    @abstractmethod
    def list_messages(self, conversation_id: int) -> List[Message]:
        """Return every message of the conversation, oldest first."""

    def close(self) -> None:
        """Release backend resources.  The default implementation holds none."""


def validate_role(role: str) -> str:
    if role not in VALID_ROLES:
        raise ValueError(f"role must be one of {sorted(VALID_ROLES)}, got {role!r}")
    return role


def validate_limit(limit: int, name: str = "limit") -> int:
    if limit < 0:
        raise ValueError(f"{name} must not be negative")
    return limit
