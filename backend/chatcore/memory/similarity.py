from __future__ import annotations

import math
from collections.abc import Sequence


def vector_norm(vector: Sequence[float]) -> float:
    return math.sqrt(sum(value * value for value in vector))


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors; 0.0 when either norm is zero."""

    if len(left) != len(right) or not left:
        return 0.0
    left_norm = vector_norm(left)
    right_norm = vector_norm(right)
    if left_norm <= 0 or right_norm <= 0:
        return 0.0
    dot = 0.0
    for l_value, r_value in zip(left, right):
        dot += l_value * r_value
    return dot / (left_norm * right_norm)
