"""scholar_rag.retrieval.similarity

Vector similarity helpers used by the record-store backed vector index.

Functions
---------
cosine_similarity
    Cosine of the angle between two vectors.
cosine_similarities
    Cosine similarity of one query vector against a matrix of candidates.
"""

from typing import Sequence

import numpy as np


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Return ``dot(a, b) / (|a| * |b|)``.

    Parameters
    ----------
    a, b : Sequence[float]
        Vectors of equal dimension.

    Returns
    -------
    float
        Similarity in ``[-1, 1]``, or ``0.0`` when either vector has zero norm.

    Raises
    ------
    ValueError
        If the vectors differ in dimension.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Vector dimensions must match: {va.shape} != {vb.shape}")

    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.clip(np.dot(va, vb) / (norm_a * norm_b), -1.0, 1.0))


def cosine_similarities(query: Sequence[float], candidates: Sequence[Sequence[float]]) -> np.ndarray:
    """Vectorised :func:`cosine_similarity` of ``query`` against each row of ``candidates``.

    Rows with zero norm score ``0.0``.

    Raises
    ------
    ValueError
        If any candidate differs in dimension from ``query``.
    """
    q = np.asarray(query, dtype=np.float64)
    if len(candidates) == 0:
        return np.zeros(0, dtype=np.float64)
    m = np.asarray(candidates, dtype=np.float64)
    if m.ndim != 2 or m.shape[1] != q.shape[0]:
        raise ValueError(f"Candidate dimensions must match query dimension {q.shape[0]}.")

    q_norm = np.linalg.norm(q)
    row_norms = np.linalg.norm(m, axis=1)
    if q_norm == 0:
        return np.zeros(m.shape[0], dtype=np.float64)

    denom = row_norms * q_norm
    dots = m @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(denom > 0, dots / denom, 0.0)
    return np.clip(scores, -1.0, 1.0)


__all__ = ["cosine_similarity", "cosine_similarities"]
