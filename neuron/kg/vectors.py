"""
Vector math shared by similarity search and clustering.

All functions accept plain ``list[float]`` (as stored on nodes) and
return plain Python values so callers never leak numpy types into
models or JSON.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Compute cosine similarity between two vectors.

    Zero-length vectors have similarity 0.0 with everything.

    Raises:
        ValueError: If the vectors have different dimensions
    """
    if len(a) != len(b):
        raise ValueError(f"Dimension mismatch: {len(a)} vs {len(b)}")
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def average_vector(vectors: Sequence[Sequence[float]]) -> list[float]:
    """Element-wise mean of equally sized vectors (empty input -> [])."""
    if not vectors:
        return []
    return np.mean(np.asarray(vectors, dtype=float), axis=0).tolist()


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """L2-normalize each row; all-zero rows stay zero."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0.0] = 1.0
    return matrix / norms


def similarity_matrix(
    rows: Sequence[Sequence[float]], columns: Sequence[Sequence[float]]
) -> np.ndarray:
    """
    Pairwise cosine similarities between two sets of vectors.

    Returns:
        Array of shape (len(rows), len(columns))
    """
    left = normalize_rows(np.asarray(rows, dtype=float))
    right = normalize_rows(np.asarray(columns, dtype=float))
    return left @ right.T
