"""High level orchestration of a streamed chat turn with durable memory.

A turn moves through ``Validating -> Persisting-User-Turn -> Building-Prompt
-> Streaming -> Persisting-Assistant-Turn -> Done``.  The first three states
run synchronously in :meth:`ChatStreamService.start_turn` so that bad input
and storage failures surface as ordinary request errors before any bytes are
streamed.  :meth:`ChatStreamService.stream_turn` then relays the generation
backend as server-sent events and, whichever way the stream ends, stores
whatever the assistant produced.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Union

import anyio
from fastapi.concurrency import run_in_threadpool

from message_store import ROLE_ASSISTANT, ROLE_USER, MessageStore, StoreError

from .config import ChatConfig
from .context import ContextAssembler, build_transcript_prompt
from .embedding_client import EmbeddingClient
from .errors import AssemblyError, GenerationStreamError, TurnPersistenceError, TurnValidationError
from .events import DONE_EVENT, HEARTBEAT_EVENT, format_data_event, format_error_event
from .llm_client import GenerationStreamClient

logger = logging.getLogger(__name__)

_FRAGMENT = "fragment"
_ERROR = "error"
_END = "end"

# Row ids are stored as signed 64-bit integers.
CONVERSATION_ID_MIN = -(2**63)
CONVERSATION_ID_MAX = 2**63 - 1


def is_valid_conversation_id(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, int):
        return False
    return CONVERSATION_ID_MIN <= value <= CONVERSATION_ID_MAX


class TurnState(str, Enum):
    VALIDATING = "validating"
    PERSISTING_USER_TURN = "persisting_user_turn"
    BUILDING_PROMPT = "building_prompt"
    STREAMING = "streaming"
    PERSISTING_ASSISTANT_TURN = "persisting_assistant_turn"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class ChatTurn:
    """Request-scoped state of one inbound chat turn."""

    requested_conversation_id: int
    conversation_id: int
    user_message: str
    transcript: List[Dict[str, str]]
    state: TurnState = TurnState.VALIDATING
    prompt: str = ""
    fragments: List[str] = field(default_factory=list)
    stream_error: Optional[str] = None
    client_disconnected: bool = False
    user_message_id: Optional[int] = None
    assistant_message_id: Optional[int] = None

    @property
    def assistant_reply(self) -> str:
        return "".join(self.fragments)


class ChatStreamService:
    """Core chat engine used by the HTTP layer and by direct Python callers.

    Every fragment from the generation backend, including empty ones, is
    added to the assistant reply in arrival order.  Only non-empty fragments
    are forwarded as ``data:`` events since an empty event carries nothing
    for the client.  Conversation ids must fit a signed 64-bit integer.
    """

    def __init__(
        self,
        config: Optional[ChatConfig] = None,
        *,
        store: MessageStore,
        embedding_client: Optional[EmbeddingClient] = None,
        generation_client: Optional[GenerationStreamClient] = None,
    ) -> None:
        self.config = config or ChatConfig()
        self.store = store
        self.embedding_client = embedding_client or EmbeddingClient(self.config.embedding)
        self.generation_client = generation_client or GenerationStreamClient(self.config.generation)
        self.assembler = ContextAssembler(
            store,
            self.embedding_client,
            relevant_first=self.config.relevant_first,
        )

    # ---------- Validating / Persisting-User-Turn / Building-Prompt ----------
    @staticmethod
    def parse_transcript(raw: Union[str, Sequence[Any], None]) -> List[Dict[str, str]]:
        """Decode and validate a client transcript.

        ``raw`` is either the JSON text sent by the browser or an already
        decoded list.  The last entry must be the new user message.
        """
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            raise TurnValidationError("Missing conversation data")
        if isinstance(raw, str):
            try:
                data = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise TurnValidationError("Invalid conversation format") from exc
        else:
            data = raw

        if not isinstance(data, list) or not data:
            raise TurnValidationError("Conversation must be a non-empty list of messages")

        transcript: List[Dict[str, str]] = []
        for position, item in enumerate(data):
            if not isinstance(item, dict):
                raise TurnValidationError(f"Message {position} is not an object")
            role = item.get("role")
            content = item.get("content")
            if not isinstance(role, str) or not isinstance(content, str):
                raise TurnValidationError(f"Message {position} needs string 'role' and 'content'")
            transcript.append({"role": role, "content": content})

        latest = transcript[-1]
        if latest["role"] != ROLE_USER:
            raise TurnValidationError("The last message must come from the user")
        if not latest["content"].strip():
            raise TurnValidationError("The user message must not be empty")
        return transcript

    def start_turn(
        self,
        transcript: Union[str, Sequence[Any], None],
        conversation_id: Optional[int] = None,
    ) -> ChatTurn:
        """Validate the turn, record the user message and build the prompt."""
        messages = self.parse_transcript(transcript)
        requested = self.config.default_conversation_id if conversation_id is None else conversation_id
        if not is_valid_conversation_id(requested):
            raise TurnValidationError("Invalid conversation_id")

        turn = ChatTurn(
            requested_conversation_id=requested,
            conversation_id=requested,
            user_message=messages[-1]["content"],
            transcript=messages,
        )

        turn.state = TurnState.PERSISTING_USER_TURN
        try:
            if not self.store.conversation_exists(requested):
                turn.conversation_id = self.store.create_conversation(None)
                logger.info(
                    "Conversation %d not found; continuing in new conversation %d",
                    requested,
                    turn.conversation_id,
                )
            user_embedding = self.embedding_client.embed_or_fallback(turn.user_message)
            turn.user_message_id = self.store.append_message(
                turn.conversation_id,
                ROLE_USER,
                turn.user_message,
                user_embedding,
            )
        except StoreError as exc:
            turn.state = TurnState.ABORTED
            logger.error("Failed to store user message for conversation %d: %s", turn.conversation_id, exc)
            raise TurnPersistenceError("Failed to store user message") from exc

        turn.state = TurnState.BUILDING_PROMPT
        try:
            turn.prompt = self.assembler.build_prompt(
                turn.conversation_id,
                turn.user_message,
                self.config.recent_limit,
                self.config.rag_limit,
                query_embedding=user_embedding,
            )
        except AssemblyError:
            logger.warning(
                "Error building combined prompt for conversation %d; using the raw transcript",
                turn.conversation_id,
                exc_info=True,
            )
            turn.prompt = build_transcript_prompt(messages)

        logger.debug("Final prompt for conversation %d:\n%s", turn.conversation_id, turn.prompt)
        return turn

    # ---------- Streaming / Persisting-Assistant-Turn ----------
    async def stream_turn(self, turn: ChatTurn) -> AsyncIterator[str]:
        """Relay the generation stream as SSE frames.

        Waits on a single event queue fed by a per-turn thread so fragments
        are forwarded in decode order.  Emits a heartbeat comment whenever
        ``heartbeat_interval`` passes without an event.  Ends with either a
        ``done`` event or one error event, then stores the assistant reply.
        """
        turn.state = TurnState.STREAMING
        loop = asyncio.get_running_loop()
        events: asyncio.Queue = asyncio.Queue()
        stop = threading.Event()

        def emit(kind: str, payload: Optional[str] = None) -> None:
            try:
                loop.call_soon_threadsafe(events.put_nowait, (kind, payload))
            except RuntimeError:
                logger.debug("Event loop closed; dropping %s event for conversation %d", kind, turn.conversation_id)

        # Held for the whole generation, so it stays out of the shared threadpool.
        pump = threading.Thread(
            target=self._pump_generation,
            args=(turn.prompt, emit, stop),
            name=f"generation-stream-{turn.conversation_id}",
            daemon=True,
        )
        pump.start()
        try:
            while True:
                try:
                    kind, payload = await asyncio.wait_for(events.get(), timeout=self.config.heartbeat_interval)
                except asyncio.TimeoutError:
                    yield HEARTBEAT_EVENT
                    continue

                if kind == _FRAGMENT:
                    turn.fragments.append(payload or "")
                    if payload:
                        yield format_data_event(payload)
                elif kind == _ERROR:
                    turn.stream_error = payload
                    logger.error("Error streaming generation for conversation %d: %s", turn.conversation_id, payload)
                    yield format_error_event(payload or "generation failed")
                    break
                else:
                    yield DONE_EVENT
                    break
        except (GeneratorExit, asyncio.CancelledError):
            turn.client_disconnected = True
            logger.info(
                "Client left conversation %d after %d fragment(s)",
                turn.conversation_id,
                len(turn.fragments),
            )
            raise
        finally:
            stop.set()
            with anyio.CancelScope(shield=True):
                await run_in_threadpool(self.complete_turn, turn)

    def complete_turn(self, turn: ChatTurn) -> None:
        """Store the accumulated assistant reply, if any.  Never raises."""
        turn.state = TurnState.PERSISTING_ASSISTANT_TURN
        reply = turn.assistant_reply
        if reply:
            embedding = self.embedding_client.embed_or_fallback(reply)
            try:
                turn.assistant_message_id = self.store.append_message(
                    turn.conversation_id,
                    ROLE_ASSISTANT,
                    reply,
                    embedding,
                )
            except Exception:
                logger.exception("Error storing assistant message for conversation %d", turn.conversation_id)

        turn.state = TurnState.ABORTED if turn.stream_error else TurnState.DONE
        logger.info(
            "Turn for conversation %d finished as %s (%d characters)",
            turn.conversation_id,
            turn.state.value,
            len(reply),
        )

    def _pump_generation(
        self,
        prompt: str,
        emit: Callable[..., None],
        stop: threading.Event,
    ) -> None:
        """Read the blocking backend stream and post its events to the loop."""
        stream = None
        try:
            stream = self.generation_client.stream(prompt)
            for fragment in stream:
                if stop.is_set():
                    logger.debug("Stream consumer stopped; abandoning generation stream")
                    return
                emit(_FRAGMENT, fragment)
        except GenerationStreamError as exc:
            emit(_ERROR, str(exc))
            return
        except Exception:
            logger.exception("Unexpected failure while reading the generation stream")
            emit(_ERROR, "generation stream failed")
            return
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()
        emit(_END)

    # ---------- Conversation helpers ----------
    def create_conversation(self, user_id: Optional[str] = None) -> int:
        return self.store.create_conversation(user_id)

    def get_history(self, conversation_id: int) -> Dict[str, object]:
        """Return the stored messages of a conversation, oldest first."""
        if not is_valid_conversation_id(conversation_id) or not self.store.conversation_exists(conversation_id):
            raise ValueError(f"No conversation found for id {conversation_id}")
        messages = self.store.list_messages(conversation_id)
        return {
            "conversation_id": conversation_id,
            "messages": [message.to_dict() for message in messages],
        }
