from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

import numpy as np

from ..entities import EmbeddableEntity

E = TypeVar("E", bound=EmbeddableEntity)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity between two vectors of the same length.

    A vector with zero magnitude carries no signal, so any comparison against
    it is 0.0 rather than an error.

    Raises:
        ValueError: If the vectors have different lengths.
    """
    if len(a) != len(b):
        raise ValueError(
            f"vectors must have the same dimensions, got {len(a)} and {len(b)}"
        )
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    magnitude_a = float(np.linalg.norm(va))
    magnitude_b = float(np.linalg.norm(vb))
    if magnitude_a == 0.0 or magnitude_b == 0.0:
        return 0.0
    similarity = float(np.dot(va, vb)) / (magnitude_a * magnitude_b)
    return max(-1.0, min(1.0, similarity))


@dataclass
class ScoredEntity(Generic[E]):
    entity: E
    similarity: float


def rank_by_similarity(
    query_vector: Sequence[float],
    candidates: Iterable[E],
    limit: int = 10,
    threshold: float | None = None,
) -> list[ScoredEntity[E]]:
    """Ranks embedded candidates by similarity to the query vector, highest
    first. Candidates without an embedding are ignored."""
    scored: list[ScoredEntity[E]] = []
    for candidate in candidates:
        if candidate.embedding is None:
            continue
        similarity = cosine_similarity(query_vector, candidate.embedding)
        if threshold is not None and similarity < threshold:
            continue
        scored.append(ScoredEntity(candidate, similarity))
    scored.sort(key=lambda s: s.similarity, reverse=True)
    return scored[:limit]
