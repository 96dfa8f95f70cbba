"""Vector similarity for duplicate detection and semantic retrieval.

All scans are brute force over the stored vectors; collections are small
(thousands of memories) and this keeps the store free of index extensions.
"""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from .constants import DEFAULT_DUPLICATE_THRESHOLD
from .models import Memory

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity ``dot(a, b) / (|a| |b|)``.

    Returns 0.0 when either vector has zero magnitude.

    Raises:
        ValueError: If the vectors differ in length
    """
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape:
        raise ValueError(f"Vector length mismatch: {va.shape[0]} vs {vb.shape[0]}")
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    # float noise can push |cos| past 1
    return float(np.clip(np.dot(va, vb) / norm, -1.0, 1.0))


def score_memories(
    query: Sequence[float], memories: Sequence[Memory]
) -> list[tuple[Memory, float]]:
    """Cosine similarity of ``query`` against every memory with a vector.

    Memories without a vector, or whose vector length differs from the
    query's, are skipped; the latter with a warning.
    """
    q = np.asarray(query, dtype=float)
    q_norm = np.linalg.norm(q)

    usable: list[Memory] = []
    skipped = 0
    for memory in memories:
        if memory.embedding is None:
            continue
        if len(memory.embedding) != q.shape[0]:
            skipped += 1
            continue
        usable.append(memory)

    if skipped:
        logger.warning(
            f"Skipped {skipped} memories whose embedding dimension differs from {q.shape[0]}"
        )
    if not usable:
        return []

    matrix = np.asarray([m.embedding for m in usable], dtype=float)
    norms = np.linalg.norm(matrix, axis=1) * q_norm
    dots = matrix @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / np.where(norms > 0, norms, 1.0), 0.0)
    sims = np.clip(sims, -1.0, 1.0)
    return [(memory, float(sim)) for memory, sim in zip(usable, sims)]


def find_similar(
    query: Sequence[float],
    memories: Sequence[Memory],
    threshold: float,
    limit: int | None = None,
) -> list[tuple[Memory, float]]:
    """Memories at or above ``threshold``, most similar first."""
    scored = [(m, s) for m, s in score_memories(query, memories) if s >= threshold]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored[:limit] if limit is not None else scored


class DuplicateDetector:
    """Finds an existing memory equivalent to a new candidate.

    Two memories are the same when their content vectors have cosine
    similarity at or above the threshold (0.9 by default).
    """

    def __init__(self, threshold: float = DEFAULT_DUPLICATE_THRESHOLD):
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Duplicate threshold must be within [0, 1], got {threshold}")
        self.threshold = threshold

    def find_duplicate(
        self, embedding: Sequence[float], memories: Sequence[Memory]
    ) -> tuple[Memory, float] | None:
        """Best match at or above the threshold, or None."""
        matches = find_similar(embedding, memories, self.threshold, limit=1)
        return matches[0] if matches else None
