"""Pytest fixtures and backend doubles for the chat memory tests."""

import time
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Sequence

import pytest
import requests

from chat_memory import ChatConfig, ChatStreamService, EmbeddingClient, EmbeddingConfig, GenerationStreamClient
from chat_memory.config import GenerationConfig
from chat_memory.errors import EmbeddingError, GenerationStreamError
from message_store import InMemoryMessageStore, SQLMessageStore, StoreError

KEYWORDS = ("cat", "dog", "weather", "python", "music", "food", "travel", "code")


class KeywordEmbeddingClient(EmbeddingClient):
    """Deterministic embedder: one component per keyword occurrence count."""

    def __init__(self) -> None:
        super().__init__(EmbeddingConfig(endpoint="http://embeddings.test/api/embed", dimension=len(KEYWORDS)))
        self.calls: List[str] = []

    def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        lowered = text.lower()
        return [float(lowered.count(keyword)) for keyword in KEYWORDS]


class FailingEmbeddingClient(EmbeddingClient):
    """Embedder whose backend is always down."""

    def __init__(self, dimension: int = 768) -> None:
        super().__init__(EmbeddingConfig(endpoint="http://embeddings.test/api/embed", dimension=dimension))

    def embed(self, text: str) -> List[float]:
        raise EmbeddingError("embedding request failed: connection refused")


class ScriptedGenerationClient(GenerationStreamClient):
    """Generation client replaying a fixed script of fragments."""

    def __init__(
        self,
        fragments: Sequence[str] = (),
        *,
        error: Optional[str] = None,
        fail_before_start: bool = False,
        delay: float = 0.0,
    ) -> None:
        super().__init__(GenerationConfig(endpoint="http://generate.test/api/generate", model="test-model"))
        self.fragments = list(fragments)
        self.error = error
        self.fail_before_start = fail_before_start
        self.delay = delay
        self.prompts: List[str] = []

    def stream(self, prompt: str, *, model: Optional[str] = None) -> Iterator[str]:
        self.prompts.append(prompt)
        if self.fail_before_start:
            raise GenerationStreamError("generation backend returned status code 500")
        for fragment in self.fragments:
            if self.delay:
                time.sleep(self.delay)
            yield fragment
        if self.error:
            raise GenerationStreamError(self.error)


class FlakyStore(InMemoryMessageStore):
    """In-memory store that fails selected operations."""

    def __init__(
        self,
        *,
        fail_roles: Iterable[str] = (),
        fail_recent: bool = False,
        fail_similar: bool = False,
    ) -> None:
        super().__init__()
        self.fail_roles = set(fail_roles)
        self.fail_recent = fail_recent
        self.fail_similar = fail_similar

    def append_message(self, conversation_id, role, content, embedding=None):
        if role in self.fail_roles:
            raise StoreError("disk full")
        return super().append_message(conversation_id, role, content, embedding)

    def recent_messages(self, conversation_id, limit):
        if self.fail_recent:
            raise StoreError("recent query failed")
        return super().recent_messages(conversation_id, limit)

    def similar_messages(self, conversation_id, query_embedding, top_n):
        if self.fail_similar:
            raise StoreError("vector index unavailable")
        return super().similar_messages(conversation_id, query_embedding, top_n)


class FakeResponse:
    """Stand-in for :class:`requests.Response` used by monkeypatched posts."""

    def __init__(
        self,
        status_code: int = 200,
        *,
        json_data: object = None,
        lines: Sequence[bytes] = (),
        fail_after_lines: bool = False,
    ) -> None:
        self.status_code = status_code
        self._json_data = json_data
        self._lines = list(lines)
        self._fail_after_lines = fail_after_lines
        self.lines_read = 0
        self.closed = False

    def json(self) -> object:
        if isinstance(self._json_data, Exception):
            raise self._json_data
        return self._json_data

    def iter_lines(self) -> Iterator[bytes]:
        for line in self._lines:
            self.lines_read += 1
            yield line
        if self._fail_after_lines:
            raise requests.exceptions.ChunkedEncodingError("Connection broken: connection reset by peer")

    def close(self) -> None:
        self.closed = True


class RecordingPost:
    """Callable replacing ``requests.post`` that records its calls."""

    def __init__(self, response: Optional[FakeResponse] = None, error: Optional[Exception] = None) -> None:
        self.response = response
        self.error = error
        self.calls: List[dict] = []

    def __call__(self, url, **kwargs):
        self.calls.append({"url": url, **kwargs})
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture
def store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture
def sql_store(temp_dir: Path) -> Iterator[SQLMessageStore]:
    sql = SQLMessageStore(f"sqlite:///{temp_dir / 'messages.db'}")
    yield sql
    sql.close()


@pytest.fixture(params=["memory", "sql"])
def any_store(request, temp_dir: Path):
    """Run the same contract tests against every store implementation."""
    if request.param == "memory":
        yield InMemoryMessageStore()
        return
    sql = SQLMessageStore(f"sqlite:///{temp_dir / 'contract.db'}")
    yield sql
    sql.close()


@pytest.fixture
def embedder() -> KeywordEmbeddingClient:
    return KeywordEmbeddingClient()


@pytest.fixture
def chat_config() -> ChatConfig:
    return ChatConfig(heartbeat_interval=5.0)


@pytest.fixture
def make_service(store, embedder, chat_config) -> Callable[..., ChatStreamService]:
    """Build a service around the shared store with a scripted backend."""

    def factory(
        generation_client: Optional[GenerationStreamClient] = None,
        *,
        service_store=None,
        embedding_client: Optional[EmbeddingClient] = None,
        config: Optional[ChatConfig] = None,
    ) -> ChatStreamService:
        return ChatStreamService(
            config or chat_config,
            store=service_store if service_store is not None else store,
            embedding_client=embedding_client or embedder,
            generation_client=generation_client or ScriptedGenerationClient(["ok"]),
        )

    return factory


async def collect_frames(service: ChatStreamService, turn) -> List[str]:
    """Drain a turn's SSE stream into a list of frames."""
    frames = []
    async for frame in service.stream_turn(turn):
        frames.append(frame)
    return frames


def seed_conversation(store, messages: Sequence[tuple], embedder: Optional[EmbeddingClient] = None) -> int:
    """Create a conversation holding ``(role, content)`` pairs in order."""
    conversation_id = store.create_conversation()
    for role, content in messages:
        embedding = embedder.embed(content) if embedder is not None else None
        store.append_message(conversation_id, role, content, embedding)
    return conversation_id
