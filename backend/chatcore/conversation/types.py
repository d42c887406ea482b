from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional

from chatcore.utils.time_utils import parse_iso, utc_now

Role = Literal["user", "assistant"]

TEMP_CONVERSATION_ID = "__temp_chat__"
DEFAULT_TITLE = "New chat"


def new_id() -> str:
    """Return a fresh opaque identifier."""

    return uuid.uuid4().hex


@dataclass
class Message:
    """One chat message.

    ``id`` is assigned once; fork operations copy it so that variants of the
    same user turn share an id across branches.
    """

    role: Role
    content: str = ""
    id: str = field(default_factory=new_id)
    thinking: str = ""
    attachments: list[dict[str, Any]] = field(default_factory=list)
    tool_trace: list[dict[str, Any]] = field(default_factory=list)
    is_done: bool = True
    created_at: datetime = field(default_factory=utc_now)
    tokens: Optional[dict[str, Optional[int]]] = None

    def copy(self) -> "Message":
        return Message(
            role=self.role,
            content=self.content,
            id=self.id,
            thinking=self.thinking,
            attachments=[dict(item) for item in self.attachments],
            tool_trace=[dict(item) for item in self.tool_trace],
            is_done=self.is_done,
            created_at=self.created_at,
            tokens=dict(self.tokens) if self.tokens else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "thinking": self.thinking,
            "attachments": self.attachments,
            "tool_trace": self.tool_trace,
            "is_done": self.is_done,
            "created_at": self.created_at.isoformat(),
            "tokens": self.tokens,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        role = str(data.get("role") or "user")
        message_id = data.get("id")
        tokens = data.get("tokens")
        return cls(
            role="assistant" if role == "assistant" else "user",
            content=str(data.get("content") or ""),
            id=message_id if isinstance(message_id, str) and message_id else new_id(),
            thinking=str(data.get("thinking") or ""),
            attachments=list(data.get("attachments") or []),
            tool_trace=list(data.get("tool_trace") or data.get("toolTrace") or []),
            is_done=bool(data.get("is_done", data.get("isDone", True))),
            created_at=parse_iso(data.get("created_at", data.get("createdAt"))) or utc_now(),
            tokens=tokens if isinstance(tokens, dict) else None,
        )


@dataclass
class Branch:
    """An independent message sequence; one variant of a conversation."""

    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    forked_from_user_message_index: Optional[int] = None
    messages: list[Message] = field(default_factory=list)

    def contains_user_message(self, message_id: str) -> bool:
        return any(m.role == "user" and m.id == message_id for m in self.messages)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "forked_from_user_message_index": self.forked_from_user_message_index,
            "messages": [message.to_dict() for message in self.messages],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Branch":
        branch_id = data.get("id")
        forked = data.get(
            "forked_from_user_message_index", data.get("forkedFromUserMessageIndex")
        )
        return cls(
            id=branch_id if isinstance(branch_id, str) and branch_id else new_id(),
            created_at=parse_iso(data.get("created_at", data.get("createdAt"))) or utc_now(),
            forked_from_user_message_index=forked if isinstance(forked, int) else None,
            messages=[
                Message.from_dict(item)
                for item in data.get("messages") or []
                if isinstance(item, dict)
            ],
        )


@dataclass
class Conversation:
    """A conversation and its branch graph.

    ``messages`` is always the active branch's list object, so appends made
    through it land on the active branch.
    """

    id: str = field(default_factory=new_id)
    title: str = DEFAULT_TITLE
    created_at: datetime = field(default_factory=utc_now)
    branches: list[Branch] = field(default_factory=list)
    active_branch_id: Optional[str] = None
    deleted_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not self.branches:
            self.branches.append(Branch())
        self.active_branch()

    @property
    def is_temporary(self) -> bool:
        return self.id == TEMP_CONVERSATION_ID

    @property
    def messages(self) -> list[Message]:
        return self.active_branch().messages

    def active_branch(self) -> Branch:
        """Resolve the active branch, repairing a stale id to ``branches[0]``."""

        for branch in self.branches:
            if branch.id == self.active_branch_id:
                return branch
        fallback = self.branches[0]
        self.active_branch_id = fallback.id
        return fallback

    def get_branch(self, branch_id: str) -> Optional[Branch]:
        return next((b for b in self.branches if b.id == branch_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at.isoformat(),
            "active_branch_id": self.active_branch().id,
            "branches": [branch.to_dict() for branch in self.branches],
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Conversation":
        """Load a stored document, upgrading flat ``messages`` layouts to one branch."""

        raw_branches = data.get("branches")
        if isinstance(raw_branches, list) and raw_branches:
            branches = [Branch.from_dict(item) for item in raw_branches if isinstance(item, dict)]
        else:
            legacy = Branch(
                messages=[
                    Message.from_dict(item)
                    for item in data.get("messages") or []
                    if isinstance(item, dict)
                ]
            )
            branches = [legacy]
        conversation_id = data.get("id")
        active = data.get("active_branch_id", data.get("activeBranchId"))
        return cls(
            id=conversation_id if isinstance(conversation_id, str) and conversation_id else new_id(),
            title=str(data.get("title") or DEFAULT_TITLE),
            created_at=parse_iso(data.get("created_at", data.get("createdAt"))) or utc_now(),
            branches=branches or [Branch()],
            active_branch_id=active if isinstance(active, str) else None,
            deleted_at=parse_iso(data.get("deleted_at", data.get("deletedAt"))),
        )
