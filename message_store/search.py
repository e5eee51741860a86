"""Nearest-neighbour ranking of message embeddings with FAISS."""

from __future__ import annotations

import logging
from typing import List, Sequence, Tuple

import numpy as np

try:
    import faiss  # type: ignore
except ImportError as exc:  # pragma: no cover - runtime dependency
    raise RuntimeError(
        "The faiss library is required for similarity search. Install faiss or faiss-cpu via pip or conda."
    ) from exc

from .base import Message

logger = logging.getLogger(__name__)


def rank_by_distance(
    query: Sequence[float],
    candidates: Sequence[Sequence[float]],
    top_n: int,
) -> List[Tuple[int, float]]:
    """Rank ``candidates`` by Euclidean distance to ``query``.

    Returns ``(position, distance)`` pairs for at most ``top_n`` candidates,
    nearest first.  Equal distances are ordered by position so that the
    ranking is deterministic for a given input.  Every candidate must have
    the same dimension as the query.
    """
    if top_n <= 0 or not candidates or not len(query):
        return []

    vector = np.asarray(query, dtype="float32").reshape(1, -1)
    matrix = np.asarray(candidates, dtype="float32")
    if matrix.ndim != 2 or matrix.shape[1] != vector.shape[1]:
        raise ValueError(
            f"Candidate dimension {matrix.shape[-1]} does not match query dimension {vector.shape[1]}"
        )

    index = faiss.IndexFlatL2(vector.shape[1])
    index.add(np.ascontiguousarray(matrix))
    search_k = min(top_n, index.ntotal)
    distances, ids = index.search(vector, search_k)

    ranked: List[Tuple[int, float]] = []
    for idx, squared in zip(ids[0], distances[0]):
        if idx < 0:
            continue
        ranked.append((int(idx), float(np.sqrt(max(float(squared), 0.0)))))
    ranked.sort(key=lambda pair: (pair[1], pair[0]))
    logger.debug("Ranked %d of %d candidate(s)", len(ranked), len(candidates))
    return ranked


def nearest_messages(
    query: Sequence[float],
    messages: Sequence[Message],
    top_n: int,
) -> List[Message]:
    """Return the ``top_n`` messages whose embeddings are nearest to ``query``.

    Messages without an embedding, or with an embedding of another
    dimension than the query, are left out of the ranking.
    """
    dimension = len(query)
    comparable = [msg for msg in messages if msg.embedding is not None and len(msg.embedding) == dimension]
    skipped = len(messages) - len(comparable)
    if skipped:
        logger.debug("Skipped %d message(s) without a comparable embedding", skipped)
    ranked = rank_by_distance(query, [msg.embedding for msg in comparable], top_n)  # type: ignore[misc]
    return [comparable[position] for position, _ in ranked]
