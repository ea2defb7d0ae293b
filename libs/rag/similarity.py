"""Vector similarity helpers shared by search and link computation."""

from __future__ import annotations

import math
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

from libs.core.exceptions import DimensionMismatchError

T = TypeVar("T")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between ``a`` and ``b``, in [-1, 1].

    A zero-magnitude vector has no direction, so its similarity to
    anything is defined as 0.
    """
    if len(a) != len(b):
        raise DimensionMismatchError(
            f"Vectors must have the same length ({len(a)} != {len(b)})"
        )
    dot = math.fsum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(math.fsum(x * x for x in a))
    norm_b = math.sqrt(math.fsum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    # Clamp rounding noise such as 1.0000000000000002
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))


def rank_by_similarity(
    query: Sequence[float],
    candidates: Sequence[T],
    vector_of: Callable[[T], Optional[Sequence[float]]],
    limit: Optional[int] = None,
    min_similarity: Optional[float] = None,
) -> List[Tuple[T, float]]:
    """Score ``candidates`` against ``query`` and sort by descending similarity.

    Candidates without a vector are skipped.
    """
    scored: List[Tuple[T, float]] = []
    for candidate in candidates:
        vec = vector_of(candidate)
        if vec is None:
            continue
        score = cosine_similarity(query, vec)
        if min_similarity is not None and score < min_similarity:
            continue
        scored.append((candidate, score))
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored[:limit] if limit is not None else scored


__all__ = ["cosine_similarity", "rank_by_similarity"]
