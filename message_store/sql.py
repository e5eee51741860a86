"""Relational message store built on SQLAlchemy.

Conversations and messages live in two tables.  Embeddings are stored as
``float32`` blobs next to their dimension so that any SQLAlchemy backend
can hold them; similarity ranking happens in-process through
:func:`message_store.search.nearest_messages`.  SQLite is the default
target, but any SQLAlchemy URL (PostgreSQL included) works.

``similar_messages`` loads every embedded message of the conversation and
ranks them in Python on each call, so its cost grows linearly with the
conversation's history.  Very long conversations would need an in-database
vector index (e.g. pgvector's ``ORDER BY embedding <-> :query LIMIT :n``).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

import numpy as np
from sqlalchemy import DateTime, ForeignKey, Integer, LargeBinary, String, Text, create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from .base import Message, MessageStore, StoreError, validate_limit, validate_role
from .search import nearest_messages

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ConversationRow(Base):
    __tablename__ = "conversations"
    __table_args__ = {"sqlite_autoincrement": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class MessageRow(Base):
    __tablename__ = "chat_messages"
    __table_args__ = {"sqlite_autoincrement": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(ForeignKey("conversations.id"), index=True, nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[Optional[bytes]] = mapped_column(LargeBinary, nullable=True)
    embedding_dim: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


def encode_embedding(embedding: Sequence[float]) -> bytes:
    return np.asarray(embedding, dtype="float32").tobytes()


def decode_embedding(blob: Optional[bytes], dimension: Optional[int]) -> Optional[tuple]:
    if blob is None:
        return None
    vector = np.frombuffer(blob, dtype="float32")
    if dimension is not None and vector.shape[0] != dimension:
        logger.warning("Stored embedding has %d components, expected %d", vector.shape[0], dimension)
        return None
    return tuple(float(v) for v in vector)


class SQLMessageStore(MessageStore):
    """Message store persisted through a SQLAlchemy engine."""

    def __init__(self, database_url: str, *, echo: bool = False) -> None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.database_url = database_url
        self._engine = create_engine(database_url, echo=echo, connect_args=connect_args)
        try:
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to initialise message store: {exc}") from exc
        logger.info("Message store ready at %s", self._engine.url.render_as_string(hide_password=True))

    def conversation_exists(self, conversation_id: int) -> bool:
        try:
            with Session(self._engine) as session:
                return session.get(ConversationRow, conversation_id) is not None
        except SQLAlchemyError as exc:
            raise StoreError(f"conversation_exists: {exc}") from exc

    def create_conversation(self, user_id: Optional[str] = None) -> int:
        try:
            with Session(self._engine) as session, session.begin():
                row = ConversationRow(user_id=user_id)
                session.add(row)
                session.flush()
                conversation_id = row.id
        except SQLAlchemyError as exc:
            raise StoreError(f"create_conversation: {exc}") from exc
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
        try:
            with Session(self._engine) as session, session.begin():
                if session.get(ConversationRow, conversation_id) is None:
                    raise StoreError(f"Conversation {conversation_id} does not exist")
                row = MessageRow(
                    conversation_id=conversation_id,
                    role=role,
                    content=content,
                    embedding=encode_embedding(embedding) if embedding is not None else None,
                    embedding_dim=len(embedding) if embedding is not None else None,
                )
                session.add(row)
                session.flush()
                message_id = row.id
        except SQLAlchemyError as exc:
            raise StoreError(f"append_message: {exc}") from exc
        logger.debug("Stored %s message %d in conversation %d", role, message_id, conversation_id)
        return message_id

    def recent_messages(self, conversation_id: int, limit: int) -> List[Message]:
        validate_limit(limit)
        if limit == 0:
            return []
        stmt = (
            select(MessageRow)
            .where(MessageRow.conversation_id == conversation_id)
            .order_by(MessageRow.id.desc())
            .limit(limit)
        )
        rows = self._fetch(stmt, "recent_messages")
        rows.reverse()
        return rows

    def similar_messages(
        self,
        conversation_id: int,
        query_embedding: Sequence[float],
        top_n: int,
    ) -> List[Message]:
        validate_limit(top_n, "top_n")
        if top_n == 0:
            return []
        stmt = (
            select(MessageRow)
            .where(
                MessageRow.conversation_id == conversation_id,
                MessageRow.embedding.is_not(None),
                MessageRow.embedding_dim == len(query_embedding),
            )
            .order_by(MessageRow.id)
        )
        candidates = self._fetch(stmt, "similar_messages", with_embeddings=True)
        return nearest_messages(query_embedding, candidates, top_n)

    def list_messages(self, conversation_id: int) -> List[Message]:
        stmt = select(MessageRow).where(MessageRow.conversation_id == conversation_id).order_by(MessageRow.id)
        return self._fetch(stmt, "list_messages")

    def close(self) -> None:
        self._engine.dispose()

    def _fetch(self, stmt, operation: str, *, with_embeddings: bool = False) -> List[Message]:
        try:
            with Session(self._engine) as session:
                rows = session.scalars(stmt).all()
                return [self._to_message(row, with_embeddings) for row in rows]
        except SQLAlchemyError as exc:
            raise StoreError(f"{operation}: {exc}") from exc

    @staticmethod
    def _to_message(row: MessageRow, with_embeddings: bool) -> Message:
        created_at = row.created_at
        if created_at.tzinfo is None:
            # SQLite drops the offset; values are always written in UTC.
            created_at = created_at.replace(tzinfo=timezone.utc)
        return Message(
            id=row.id,
            conversation_id=row.conversation_id,
            role=row.role,
            content=row.content,
            created_at=created_at,
            embedding=decode_embedding(row.embedding, row.embedding_dim) if with_embeddings else None,
        )
