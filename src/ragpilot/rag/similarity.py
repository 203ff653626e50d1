"""Vector and word-set similarity measures."""

from collections.abc import Sequence

import numpy as np


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors.

    Raises ValueError if the vectors differ in dimensionality. Returns 0.0
    when either vector has zero magnitude.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Vectors must have the same dimensions ({va.shape[0]} != {vb.shape[0]})")

    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    # Rounding can push the ratio slightly outside [-1, 1]
    return float(np.clip(np.dot(va, vb) / (norm_a * norm_b), -1.0, 1.0))


def word_set(text: str) -> set[str]:
    """Lower-cased whitespace-delimited tokens."""
    return set(text.lower().split())


def jaccard_similarity(text_a: str, text_b: str) -> float:
    """Jaccard overlap of the two texts' word sets."""
    words_a = word_set(text_a)
    words_b = word_set(text_b)
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)
