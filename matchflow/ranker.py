"""Cosine similarity between embeddings and thresholded ranking of candidates."""
from __future__ import annotations

import math
from typing import Iterable, Mapping, Sequence, Union

from matchflow.errors import DimensionMismatch, ZeroVector
from matchflow.log import get_logger

log = get_logger(__name__)

Vector = Sequence[float]
Candidates = Union[Mapping[str, Vector], Iterable[tuple[str, Vector]]]

# Score given to a zero-magnitude candidate when invalid vectors are tolerated.
ZERO_VECTOR_SENTINEL = 0.0


def similarity(a: Vector, b: Vector) -> float:
    """Cosine similarity in [-1, 1].

    Raises DimensionMismatch when the lengths differ and ZeroVector when either
    side has zero magnitude; the result is never NaN.
    """
    if len(a) != len(b):
        raise DimensionMismatch(len(a), len(b))
    sq_a = math.fsum(x * x for x in a)
    sq_b = math.fsum(y * y for y in b)
    if sq_a == 0.0 or sq_b == 0.0:
        raise ZeroVector()
    dot = math.fsum(x * y for x, y in zip(a, b))
    return max(-1.0, min(1.0, dot / math.sqrt(sq_a * sq_b)))


def match_score(sim: float) -> float:
    """Map a cosine similarity onto the 0-100 match score (negatives floor at 0)."""
    return round(max(0.0, sim) * 100.0, 2)


def _items(candidates: Candidates) -> Iterable[tuple[str, Vector]]:
    if isinstance(candidates, Mapping):
        return candidates.items()
    return candidates


def rank(
    query: Vector,
    candidates: Candidates,
    threshold: float | None = 0.0,
    *,
    skip_invalid: bool = False,
) -> list[tuple[str, float]]:
    """Rank candidates by similarity to ``query``.

    Returns ``(candidate_id, similarity)`` pairs sorted by descending
    similarity; ties keep candidate insertion order. Entries with
    ``similarity * 100 < threshold`` are dropped (``threshold=None`` keeps
    everything). With ``skip_invalid`` a mismatched candidate is skipped and a
    zero vector scores ZERO_VECTOR_SENTINEL instead of raising.
    """
    scored: list[tuple[str, float]] = []
    examined = 0
    for candidate_id, vector in _items(candidates):
        examined += 1
        try:
            sim = similarity(query, vector)
        except DimensionMismatch as exc:
            if not skip_invalid:
                raise
            log.warning("Skipping candidate %s: %s", candidate_id, exc)
            continue
        except ZeroVector:
            if not skip_invalid:
                raise
            sim = ZERO_VECTOR_SENTINEL
        if threshold is not None and sim * 100.0 < threshold:
            continue
        scored.append((candidate_id, sim))

    result = sorted(scored, key=lambda item: -item[1])
    log.debug("Ranked %d candidates, %d kept", examined, len(result))
    return result
