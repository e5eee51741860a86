"""Configuration objects for the chat memory service."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class GenerationConfig:
    """Streaming text-generation backend."""

    endpoint: str = "http://localhost:11434/api/generate"
    model: str = "deepseek-r1:14b"
    connect_timeout: float = 10.0
    read_timeout: float = 300.0


@dataclass
class EmbeddingConfig:
    """Embedding backend and the shape of the vectors it returns."""

    endpoint: str = "http://localhost:11434/api/embed"
    model: str = "nomic-embed-text"
    dimension: int = 768
    truncate: bool = True
    request_timeout: float = 15.0


@dataclass
class ChatConfig:
    """Runtime controls for a chat turn."""

    generation: GenerationConfig = field(default_factory=GenerationConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    database_url: str = "sqlite:///./chat_memory.db"
    recent_limit: int = 10
    rag_limit: int = 3
    heartbeat_interval: float = 10.0
    default_conversation_id: int = 1
    # Place the retrieved block ahead of the recent transcript in the prompt.
    relevant_first: bool = False
