from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import Field

from chatcore.schemas.common import APIModel


class MessageOut(APIModel):
    """Message payload."""

    id: str
    role: str
    content: str
    thinking: str = ""
    attachments: list[dict[str, Any]] = Field(default_factory=list)
    tool_trace: list[dict[str, Any]] = Field(default_factory=list)
    is_done: bool = True
    created_at: datetime
    tokens: Optional[dict[str, Optional[int]]] = None


class BranchOut(APIModel):
    """Branch payload with its messages."""

    id: str
    created_at: datetime
    forked_from_user_message_index: Optional[int] = None
    messages: list[MessageOut] = Field(default_factory=list)


class ConversationOut(APIModel):
    """Full conversation payload; ``messages`` mirrors the active branch."""

    id: str
    title: str
    created_at: datetime
    active_branch_id: Optional[str] = None
    deleted_at: Optional[datetime] = None
    is_temporary: bool = False
    messages: list[MessageOut] = Field(default_factory=list)
    branches: list[BranchOut] = Field(default_factory=list)


class ConversationSummaryOut(APIModel):
    """Sidebar row for a conversation."""

    id: str
    title: str
    created_at: datetime
    deleted_at: Optional[datetime] = None


class ConversationListResponse(APIModel):
    """List of conversation summaries."""

    conversations: list[ConversationSummaryOut]


class ConversationCreateRequest(APIModel):
    """Payload for creating a conversation."""

    title: Optional[str] = Field(default=None, max_length=200)


class ConversationRenameRequest(APIModel):
    """Payload for renaming a conversation."""

    title: str = Field(min_length=1, max_length=200)


class ConversationPurgeResponse(APIModel):
    """Count of conversations removed from the trash."""

    purged: int
