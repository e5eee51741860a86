"""Exceptions raised by the chat memory service."""

from __future__ import annotations


class ChatMemoryError(Exception):
    """Base class for chat memory failures."""


class EmbeddingError(ChatMemoryError):
    """The embedding backend could not produce a vector."""


class GenerationStreamError(ChatMemoryError):
    """The generation backend failed before or during streaming."""


class AssemblyError(ChatMemoryError):
    """The prompt could not be assembled from stored history."""


class TurnValidationError(ChatMemoryError, ValueError):
    """The inbound chat turn is missing or malformed."""


class TurnPersistenceError(ChatMemoryError):
    """The user turn could not be recorded, so the turn cannot proceed."""
