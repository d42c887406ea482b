from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import Field

from chatcore.schemas.common import APIModel


class MemoryOut(APIModel):
    """Memory payload; the vector itself is never returned."""

    id: str
    text: str
    embedding_model: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    last_retrieved_at: Optional[datetime] = None


class MemoryListResponse(APIModel):
    """All stored memories."""

    memories: list[MemoryOut]


class MemoryWriteRequest(APIModel):
    """Payload for creating or replacing a memory."""

    text: str = Field(min_length=1, max_length=4000)


class MemoryEditorStatusOut(APIModel):
    """Memory editor queue state."""

    enabled: bool
    running: bool
    queued: bool
    conversation_id: Optional[str] = None
