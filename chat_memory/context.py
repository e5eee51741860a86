"""Prompt assembly from short-term history and retrieved older turns."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from message_store import Message, MessageStore, StoreError

from .embedding_client import EmbeddingClient
from .errors import AssemblyError

logger = logging.getLogger(__name__)

PREAMBLE = (
    "You are a chat bot that answers questions based on the conversation history and relevant context."
)
RECENT_HEADER = "Short-Term Memory (This is your memory the previous chats we have had):"
RELEVANT_HEADER = "Relevant Context (This is the relevant context found from embeddings):"
QUERY_HEADER = "Main Query (This what you need to respond to):"
SECTION_SEPARATOR = "\n\n---\n\n"


@dataclass
class AssembledPrompt:
    text: str
    recent: List[Message] = field(default_factory=list)
    relevant: List[Message] = field(default_factory=list)
    # True when retrieval failed and only the recent window was used.
    degraded: bool = False


def render_messages(messages: Sequence[Message]) -> str:
    return "\n".join(f"{msg.role}: {msg.content}" for msg in messages)


def render_query(query: str) -> str:
    return f"User: {query}\nAssistant:"


def build_transcript_prompt(transcript: Sequence[Dict[str, str]]) -> str:
    """Render a raw client transcript as a prompt, without any retrieval."""
    lines = "".join(f"{turn.get('role', 'user')}: {turn.get('content', '')}\n" for turn in transcript)
    return lines + "\nAssistant:"


class ContextAssembler:
    """Build the generation prompt for one turn of a conversation.

    The prompt combines three sections in a fixed layout: the last
    ``recent_limit`` messages in chronological order, the ``rag_limit``
    stored messages nearest to the query (nearest first, as returned by
    the store), and the query itself.  Output depends only on the store
    contents at call time, so identical inputs give identical prompts.
    """

    def __init__(
        self,
        store: MessageStore,
        embedding_client: EmbeddingClient,
        *,
        relevant_first: bool = False,
    ) -> None:
        self.store = store
        self.embedding_client = embedding_client
        self.relevant_first = relevant_first

    def build_prompt(
        self,
        conversation_id: int,
        user_query: str,
        recent_limit: int,
        rag_limit: int,
        *,
        query_embedding: Optional[Sequence[float]] = None,
    ) -> str:
        return self.assemble(
            conversation_id,
            user_query,
            recent_limit,
            rag_limit,
            query_embedding=query_embedding,
        ).text

    def assemble(
        self,
        conversation_id: int,
        user_query: str,
        recent_limit: int,
        rag_limit: int,
        *,
        query_embedding: Optional[Sequence[float]] = None,
    ) -> AssembledPrompt:
        """Fetch both memory windows and render the prompt.

        Raises :class:`AssemblyError` when the recent window cannot be read.
        A failed similarity search only drops the relevant-context section.
        """
        try:
            recent = self.store.recent_messages(conversation_id, recent_limit)
        except StoreError as exc:
            raise AssemblyError(f"failed to fetch last messages: {exc}") from exc

        relevant: List[Message] = []
        degraded = False
        if rag_limit > 0:
            if query_embedding is None:
                query_embedding = self.embedding_client.embed_or_fallback(user_query)
            try:
                relevant = self.store.similar_messages(conversation_id, query_embedding, rag_limit)
            except StoreError:
                logger.warning(
                    "Similarity search failed for conversation %d; using short-term memory only",
                    conversation_id,
                    exc_info=True,
                )
                degraded = True

        text = self.render(recent, relevant, user_query)
        logger.debug(
            "Assembled prompt for conversation %d with %d recent and %d relevant message(s)",
            conversation_id,
            len(recent),
            len(relevant),
        )
        return AssembledPrompt(text=text, recent=recent, relevant=relevant, degraded=degraded)

    def render(self, recent: Sequence[Message], relevant: Sequence[Message], user_query: str) -> str:
        if not recent and not relevant:
            return render_query(user_query)

        recent_section = f"{RECENT_HEADER}\n{render_messages(recent)}"
        relevant_section = f"{RELEVANT_HEADER}\n{render_messages(relevant)}"
        sections = [relevant_section, recent_section] if self.relevant_first else [recent_section, relevant_section]
        sections.append(f"{QUERY_HEADER}\n\n{render_query(user_query)}")
        return PREAMBLE + "\n" + SECTION_SEPARATOR.join(sections)
