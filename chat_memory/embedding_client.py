"""Client for the embedding endpoint used to index and query chat turns."""

from __future__ import annotations

import logging
from typing import List

import requests

from .config import EmbeddingConfig
from .errors import EmbeddingError

logger = logging.getLogger(__name__)


class EmbeddingClient:
    """Turn text into a fixed-dimension vector with a single backend call.

    No caching and no retries: each call is one request bounded by
    ``EmbeddingConfig.request_timeout``.  Callers that must not fail use
    :meth:`embed_or_fallback`, which substitutes a zero vector.
    """

    def __init__(self, config: EmbeddingConfig) -> None:
        self.config = config

    def embed(self, text: str) -> List[float]:
        """Return the embedding of ``text`` or raise :class:`EmbeddingError`."""
        if not text:
            raise EmbeddingError("Cannot embed empty text")

        payload = {
            "model": self.config.model,
            "input": text,
            "truncate": self.config.truncate,
        }
        logger.debug("Requesting embedding for %d character(s) from %s", len(text), self.config.endpoint)
        try:
            response = requests.post(
                self.config.endpoint,
                json=payload,
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as exc:
            raise EmbeddingError(f"embedding request failed: {exc}") from exc

        if response.status_code != 200:
            raise EmbeddingError(f"embedding service returned status code {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise EmbeddingError(f"failed to decode embedding response: {exc}") from exc
        return self._extract_vector(data)

    def embed_or_fallback(self, text: str) -> List[float]:
        """Embed ``text``; on failure log and return :meth:`zero_vector`."""
        try:
            return self.embed(text)
        except EmbeddingError as exc:
            logger.warning(
                "Embedding unavailable, storing %d-dimension zero vector instead: %s",
                self.config.dimension,
                exc,
            )
            return self.zero_vector()

    def zero_vector(self) -> List[float]:
        return [0.0] * self.config.dimension

    def _extract_vector(self, data: object) -> List[float]:
        if not isinstance(data, dict):
            raise EmbeddingError("embedding response is not a JSON object")
        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list) or not embeddings:
            raise EmbeddingError("no embeddings returned")
        first = embeddings[0]
        if not isinstance(first, list) or not first:
            raise EmbeddingError("embedding vector is empty or malformed")
        try:
            vector = [float(value) for value in first]
        except (TypeError, ValueError) as exc:
            raise EmbeddingError(f"embedding vector contains non-numeric values: {exc}") from exc
        if self.config.dimension and len(vector) != self.config.dimension:
            raise EmbeddingError(
                f"embedding dimension {len(vector)} does not match configured dimension {self.config.dimension}"
            )
        return vector
