from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from chatcore.conversation.types import DEFAULT_TITLE, Branch, Conversation, Message, new_id
from chatcore.utils.time_utils import utc_now

logger = logging.getLogger(__name__)

MAX_DERIVED_TITLE_LEN = 60


def create_conversation(title: str = DEFAULT_TITLE, conversation_id: Optional[str] = None) -> Conversation:
    """Create a conversation holding one empty, active branch."""

    branch = Branch()
    return Conversation(
        id=conversation_id or new_id(),
        title=title or DEFAULT_TITLE,
        branches=[branch],
        active_branch_id=branch.id,
    )


def append_message(conversation: Conversation, message: Message) -> Message:
    """Append to the active branch only."""

    conversation.active_branch().messages.append(message)
    return message


def fork_and_switch(
    conversation: Conversation,
    truncate_at_index: int,
    forked_from_index: int,
    replacement_tail_message: Optional[Message] = None,
) -> Branch:
    """Fork the active branch before ``truncate_at_index`` and activate the fork.

    Message values (ids included) are copied, never regenerated.
    """

    source = conversation.active_branch()
    cut = max(0, min(truncate_at_index, len(source.messages)))
    messages = [message.copy() for message in source.messages[:cut]]
    if replacement_tail_message is not None:
        messages.append(replacement_tail_message)

    branch = Branch(
        created_at=_next_created_at(conversation),
        forked_from_user_message_index=forked_from_index,
        messages=messages,
    )
    conversation.branches.append(branch)
    conversation.active_branch_id = branch.id
    return branch


def list_branches_for_user_message(conversation: Conversation, message_id: str) -> list[Branch]:
    """Return, in creation order, every branch holding that user message id."""

    seen: set[str] = set()
    found: list[Branch] = []
    for branch in conversation.branches:
        if branch.id in seen or not branch.contains_user_message(message_id):
            continue
        seen.add(branch.id)
        found.append(branch)
    return sorted(found, key=lambda b: b.created_at)


def delete_from_index(conversation: Conversation, user_message_index: int) -> bool:
    """Delete a user message and everything after it, branch-aware.

    When several branches carry variants of that turn only the active branch is
    removed and the next-oldest sibling variant becomes active. Otherwise the
    active branch is truncated in place. Returns False when the index does not
    point at a user message.
    """

    active = conversation.active_branch()
    if user_message_index < 0 or user_message_index >= len(active.messages):
        return False
    target = active.messages[user_message_index]
    if target.role != "user":
        return False

    variants = list_branches_for_user_message(conversation, target.id)
    if len(variants) > 1:
        position = next((i for i, b in enumerate(variants) if b.id == active.id), 0)
        conversation.branches = [b for b in conversation.branches if b.id != active.id]
        remaining = [b for b in variants if b.id != active.id]
        if remaining:
            # Prefer the variant created just before the removed one.
            successor = remaining[max(0, position - 1)] if position > 0 else remaining[0]
        else:
            successor = conversation.branches[0]
        conversation.active_branch_id = successor.id
        logger.debug(
            "Removed branch %s variant of message %s; active is now %s",
            active.id,
            target.id,
            successor.id,
        )
        return True

    del active.messages[user_message_index:]
    return True


def switch_active_branch(conversation: Conversation, branch_id: str) -> bool:
    """Activate ``branch_id``; unknown ids leave the conversation untouched."""

    if conversation.get_branch(branch_id) is None:
        return False
    conversation.active_branch_id = branch_id
    return True


def title_from_messages(conversation: Conversation) -> str:
    """Return a display title, deriving one from the first user message."""

    title = (conversation.title or "").strip()
    if title and title != DEFAULT_TITLE:
        return title
    messages = conversation.messages
    if not messages:
        return DEFAULT_TITLE
    first_user = next((m for m in messages if m.role == "user"), None)
    if first_user is None:
        return "Conversation"
    collapsed = " ".join(first_user.content.split())
    if not collapsed:
        return "Conversation"
    if len(collapsed) > MAX_DERIVED_TITLE_LEN:
        return collapsed[: MAX_DERIVED_TITLE_LEN - 1].rstrip() + "…"
    return collapsed


def _next_created_at(conversation: Conversation) -> datetime:
    # Keeps creation order strict even when the clock does not advance.
    now = utc_now()
    latest = max(branch.created_at for branch in conversation.branches)
    if now <= latest:
        return latest + timedelta(microseconds=1)
    return now
