"""Streaming chat orchestration over a local model with conversation memory.

This package relays a locally hosted text-generation model to clients as
server-sent events, building each prompt from the most recent turns of the
conversation plus older turns retrieved by embedding similarity.  Both sides
of every exchange are stored, with their embeddings, through a
:class:`message_store.MessageStore`.  The primary entry points are
``server.create_app`` for running the HTTP service and
``chat_memory.service.ChatStreamService`` for driving turns directly from
Python code.
"""

from .config import ChatConfig, EmbeddingConfig, GenerationConfig
from .context import ContextAssembler
from .embedding_client import EmbeddingClient
from .llm_client import GenerationStreamClient
from .service import ChatStreamService, ChatTurn, TurnState

__all__ = [
    "ChatConfig",
    "EmbeddingConfig",
    "GenerationConfig",
    "ContextAssembler",
    "EmbeddingClient",
    "GenerationStreamClient",
    "ChatStreamService",
    "ChatTurn",
    "TurnState",
]
