from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Optional

ActionType = Literal["create", "update", "delete"]


@dataclass(frozen=True)
class Memory:
    """Durable fact about the user with the vector it is retrieved by."""

    id: str
    text: str
    embedding: list[float]
    created_at: datetime
    embedding_model: Optional[str] = None
    updated_at: Optional[datetime] = None
    last_retrieved_at: Optional[datetime] = None


@dataclass(frozen=True)
class ScoredMemory:
    """Similarity-search candidate with its cosine score."""

    memory: Memory
    score: float


@dataclass(frozen=True)
class RetrievedMemories:
    """Budgeted memory block ready to be appended to a system prompt."""

    text: str = ""
    used_chars: int = 0
    count: int = 0
    memories: tuple[Memory, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class MemoryAction:
    """One create/update/delete proposal from the memory editor model.

    ``match`` references an existing memory by its text when ``id`` is unknown.
    """

    type: ActionType
    text: Optional[str] = None
    id: Optional[str] = None
    match: Optional[str] = None
