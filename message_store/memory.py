"""Process-local message store kept entirely in memory."""

from __future__ import annotations

import itertools
import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from .base import Message, MessageStore, StoreError, validate_limit, validate_role
from .search import nearest_messages

logger = logging.getLogger(__name__)


class InMemoryMessageStore(MessageStore):
    """Thread-safe store used for tests and single-process development.

    Nothing survives a restart.  Appends are serialised by a lock so
    identifiers are handed out in arrival order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._conversation_ids = itertools.count(1)
        self._message_ids = itertools.count(1)
        self._owners: Dict[int, Optional[str]] = {}
        self._messages: Dict[int, List[Message]] = {}

    def conversation_exists(self, conversation_id: int) -> bool:
        with self._lock:
            return conversation_id in self._owners

    def create_conversation(self, user_id: Optional[str] = None) -> int:
        with self._lock:
            conversation_id = next(self._conversation_ids)
            self._owners[conversation_id] = user_id
            self._messages[conversation_id] = []
        logger.info("Created conversation %d", conversation_id)
        return conversation_id

    def append_message(
        self,
        conversation_id: int,
        role: str,
        content: str,
        embedding: Optional[Sequence[float]] = None,
    ) -> int:
        validate_role(role)
        with self._lock:
            if conversation_id not in self._owners:
                raise StoreError(f"Conversation {conversation_id} does not exist")
            message = Message(
                id=next(self._message_ids),
                conversation_id=conversation_id,
                role=role,
                content=content,
                created_at=datetime.now(timezone.utc),
                embedding=tuple(float(v) for v in embedding) if embedding is not None else None,
            )
            self._messages[conversation_id].append(message)
        logger.debug("Stored %s message %d in conversation %d", role, message.id, conversation_id)
        return message.id

    def recent_messages(self, conversation_id: int, limit: int) -> List[Message]:
        validate_limit(limit)
        if limit == 0:
            return []
        with self._lock:
            return list(self._messages.get(conversation_id, [])[-limit:])

    def similar_messages(
        self,
        conversation_id: int,
        query_embedding: Sequence[float],
        top_n: int,
    ) -> List[Message]:
        validate_limit(top_n, "top_n")
        with self._lock:
            candidates = list(self._messages.get(conversation_id, []))
        return nearest_messages(query_embedding, candidates, top_n)

    def list_messages(self, conversation_id: int) -> List[Message]:
        with self._lock:
            return list(self._messages.get(conversation_id, []))
