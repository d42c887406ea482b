from __future__ import annotations

from collections.abc import Iterable
from typing import Optional

from chatcore.memory.types import Memory

DEFAULT_MATCH_THRESHOLD = 0.45


def normalize_for_match(value: Optional[str]) -> str:
    """Lowercase and collapse whitespace."""

    return " ".join(str(value or "").split()).lower()


def match_score(reference: str, candidate: str) -> float:
    """Similarity of two normalized strings.

    The greater of the token-overlap ratio (shared words over reference
    words) and the substring-containment length ratio.
    """

    if not reference or not candidate:
        return 0.0
    if reference == candidate:
        return 1.0
    tokens = [token for token in reference.split(" ") if token]
    candidate_tokens = {token for token in candidate.split(" ") if token}
    overlap = sum(1 for token in tokens if token in candidate_tokens)
    overlap_score = overlap / (len(tokens) or 1)

    substring_score = 0.0
    if reference in candidate or candidate in reference:
        substring_score = min(len(reference), len(candidate)) / max(len(reference), len(candidate))
    return max(overlap_score, substring_score)


def find_memory_id_by_text(
    text: Optional[str],
    retrieved: Iterable[Memory],
    threshold: float = DEFAULT_MATCH_THRESHOLD,
) -> Optional[str]:
    """Resolve a human-readable memory reference to the best matching memory id.

    An exact (normalized) match wins immediately. Otherwise the highest scoring
    candidate is returned when it reaches ``threshold``; ties keep the first.
    """

    target = normalize_for_match(text)
    if not target:
        return None

    best_id: Optional[str] = None
    best_score = 0.0
    for memory in retrieved:
        if not memory.id:
            continue
        candidate = normalize_for_match(memory.text)
        if not candidate:
            continue
        if candidate == target:
            return memory.id
        score = match_score(target, candidate)
        if score > best_score and score >= threshold:
            best_score = score
            best_id = memory.id
    return best_id
