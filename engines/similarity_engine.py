# QuoteBridge/engines/similarity_engine.py

import logging
from typing import Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)


def _as_vector(values: Optional[Sequence[float]]) -> Optional[np.ndarray]:
    if values is None:
        return None
    try:
        vector = np.asarray(values, dtype=float)
    except (TypeError, ValueError):
        return None
    if vector.ndim != 1 or vector.size == 0:
        return None
    if not np.all(np.isfinite(vector)):
        return None
    return vector


def similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """Cosine similarity of two pre-normalised vectors.

    Vectors are not re-normalised here.  Degenerate input (zero vector,
    length mismatch, empty or non-finite values) scores ``0.0`` instead of
    raising so one bad vector never aborts a ranking batch.
    """

    left = _as_vector(a)
    right = _as_vector(b)
    if left is None or right is None or left.shape != right.shape:
        return 0.0
    if not np.any(left) or not np.any(right):
        return 0.0
    value = float(np.dot(left, right))
    return max(-1.0, min(1.0, value))


def similarity_batch(query: Sequence[float], matrix: Sequence[Sequence[float]]) -> np.ndarray:
    """Score ``query`` against every row of ``matrix``; degenerate rows score 0."""

    rows = list(matrix)
    scores = np.zeros(len(rows), dtype=float)
    left = _as_vector(query)
    if left is None or not np.any(left):
        return scores
    for index, row in enumerate(rows):
        right = _as_vector(row)
        if right is None or right.shape != left.shape or not np.any(right):
            continue
        scores[index] = float(np.dot(left, right))
    return np.clip(scores, -1.0, 1.0)
