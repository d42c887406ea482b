from __future__ import annotations

from pydantic import Field

from chatcore.schemas.common import APIModel
from chatcore.schemas.conversation import BranchOut, ConversationOut, MessageOut


class SubmitRequest(APIModel):
    """Payload for a new user message."""

    content: str = Field(min_length=1, max_length=100000)


class EditMessageRequest(APIModel):
    """Payload for replacing a user message and forking."""

    index: int = Field(ge=0)
    content: str = Field(min_length=1, max_length=100000)


class MessageIndexRequest(APIModel):
    """Payload naming a message by its index in the active branch."""

    index: int = Field(ge=0)


class SwitchBranchRequest(APIModel):
    """Payload for activating a branch."""

    branch_id: str


class PinThinkingRequest(APIModel):
    """Payload for manually opening or closing the thinking section."""

    open: bool


class TurnResponse(APIModel):
    """Result of a streamed turn."""

    status: str
    message: MessageOut
    memories_used: int = 0
    conversation: ConversationOut


class VariantsResponse(APIModel):
    """Branches carrying variants of one user message."""

    message_id: str
    active_branch_id: str
    active_index: int
    branches: list[BranchOut]


class StreamControlResponse(APIModel):
    """Whether a stream control request found an open stream."""

    ok: bool
