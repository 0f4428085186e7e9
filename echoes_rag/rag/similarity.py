"""
Similarity math shared by every vector store backend.

All scores leave a store in one shape: higher is more similar. Cosine-native
backends report cosine similarity in [-1, 1]; distance-native backends are
converted with ``1 / (1 + distance)`` into (0, 1].
"""

from __future__ import annotations

from typing import Sequence

import numpy as np


def sanitize_vector(vector: Sequence[float]) -> list[float]:
    """Replace NaN and +/-Infinity components with 0.0."""
    arr = np.asarray(vector, dtype=np.float64)
    arr[~np.isfinite(arr)] = 0.0
    return arr.tolist()


def _scaled(arr: np.ndarray) -> np.ndarray:
    """Divide by the largest absolute component so norms cannot overflow.

    Cosine is scale-invariant, so this changes no score.
    """
    peak = np.max(np.abs(arr), axis=-1, keepdims=True)
    peak = np.where((peak > 0.0) & np.isfinite(peak), peak, 1.0)
    return arr / peak


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between ``a`` and ``b``; 0.0 when either has zero norm."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Vector length mismatch: {va.shape[0]} != {vb.shape[0]}")
    return float(cosine_similarities(va, vb.reshape(1, -1))[0])


def cosine_similarities(query: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """Vectorized cosine of ``query`` against each row of ``matrix``.

    Rows (or a query) with zero norm score exactly 0.0, and so does any
    score that is not finite.
    """
    q = np.asarray(query, dtype=np.float64)
    if matrix.size == 0:
        return np.zeros(matrix.shape[0], dtype=np.float64)
    if matrix.shape[1] != q.shape[0]:
        raise ValueError(f"Vector length mismatch: {q.shape[0]} != {matrix.shape[1]}")
    q = _scaled(q)
    m = _scaled(np.asarray(matrix, dtype=np.float64))
    norms = np.linalg.norm(m, axis=1) * np.linalg.norm(q)
    dots = m @ q
    scores = np.zeros(m.shape[0], dtype=np.float64)
    valid = (norms > 0.0) & np.isfinite(norms) & np.isfinite(dots)
    scores[valid] = dots[valid] / norms[valid]
    scores[~np.isfinite(scores)] = 0.0
    return np.clip(scores, -1.0, 1.0)


def distance_to_similarity(distance: float) -> float:
    """Map a non-negative distance onto (0, 1]; 0 distance is similarity 1."""
    if not np.isfinite(distance):
        return 0.0
    # float error can push an exact match slightly below zero
    return 1.0 / (1.0 + max(0.0, float(distance)))


def rank(scored: list[tuple[str, float]], limit: int) -> list[tuple[str, float]]:
    """Sort by descending score, ties by ascending id, and keep ``limit``."""
    return sorted(scored, key=lambda item: (-item[1], item[0]))[:limit]
