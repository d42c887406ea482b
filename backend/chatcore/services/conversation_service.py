from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatcore.conversation.branch_tree import create_conversation, title_from_messages
from chatcore.conversation.types import DEFAULT_TITLE, TEMP_CONVERSATION_ID, Conversation
from chatcore.repos.conversation_repo import ConversationRepo
from chatcore.utils.time_utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class ConversationOperationError(RuntimeError):
    """Domain error for conversation and chat operations."""

    code: str
    message: str


class ConversationService:
    """Load, save and trash conversations.

    The temporary conversation is held in memory only.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        trash_retention: timedelta = timedelta(days=30),
    ) -> None:
        self._sessionmaker = sessionmaker
        self._trash_retention = trash_retention
        self._temporary: Optional[Conversation] = None

    async def create(self, title: Optional[str] = None) -> Conversation:
        conversation = create_conversation(title=(title or "").strip() or DEFAULT_TITLE)
        await self.save(conversation)
        return conversation

    def new_temporary(self) -> Conversation:
        """Start a fresh temporary conversation, discarding the previous one."""

        self._temporary = create_conversation(conversation_id=TEMP_CONVERSATION_ID)
        return self._temporary

    async def get(self, conversation_id: str) -> Conversation:
        """Return a live conversation or raise ``CONVERSATION_NOT_FOUND``."""

        if conversation_id == TEMP_CONVERSATION_ID:
            if self._temporary is None:
                return self.new_temporary()
            return self._temporary
        async with self._sessionmaker() as db:
            conversation = await ConversationRepo(db).get(conversation_id)
        if conversation is None:
            raise ConversationOperationError("CONVERSATION_NOT_FOUND", "Conversation not found")
        return conversation

    async def list_active(self) -> list[Conversation]:
        async with self._sessionmaker() as db:
            return await ConversationRepo(db).list_active()

    async def list_trashed(self) -> list[Conversation]:
        async with self._sessionmaker() as db:
            return await ConversationRepo(db).list_trashed()

    async def save(self, conversation: Conversation) -> None:
        """Persist a conversation; the temporary one is never written."""

        if conversation.is_temporary:
            return
        conversation.title = title_from_messages(conversation)
        async with self._sessionmaker() as db:
            async with db.begin():
                await ConversationRepo(db).put(conversation)

    async def rename(self, conversation_id: str, title: str) -> Conversation:
        cleaned = " ".join((title or "").split())
        if not cleaned:
            raise ConversationOperationError("INVALID_TITLE", "Title must not be empty")
        conversation = await self.get(conversation_id)
        conversation.title = cleaned
        await self.save(conversation)
        return conversation

    async def trash(self, conversation_id: str) -> None:
        await self._set_deleted(conversation_id, trashed=True)

    async def restore(self, conversation_id: str) -> None:
        await self._set_deleted(conversation_id, trashed=False)

    async def delete_permanently(self, conversation_id: str) -> None:
        async with self._sessionmaker() as db:
            async with db.begin():
                deleted = await ConversationRepo(db).hard_delete(conversation_id)
        if not deleted:
            raise ConversationOperationError("CONVERSATION_NOT_FOUND", "Conversation not found")

    async def purge_expired_trash(self) -> int:
        """Permanently delete conversations trashed longer than the retention window."""

        if self._trash_retention <= timedelta(0):
            return 0
        cutoff = utc_now() - self._trash_retention
        async with self._sessionmaker() as db:
            async with db.begin():
                purged = await ConversationRepo(db).purge_trashed_before(cutoff)
        if purged:
            logger.info("Purged %d conversations from trash", purged)
        return purged

    async def _set_deleted(self, conversation_id: str, trashed: bool) -> None:
        if conversation_id == TEMP_CONVERSATION_ID:
            raise ConversationOperationError(
                "TEMPORARY_CONVERSATION", "The temporary conversation cannot be trashed"
            )
        async with self._sessionmaker() as db:
            async with db.begin():
                updated = await ConversationRepo(db).set_deleted_at(
                    conversation_id, utc_now() if trashed else None
                )
        if not updated:
            raise ConversationOperationError("CONVERSATION_NOT_FOUND", "Conversation not found")


def get_conversation_service(request: Request) -> ConversationService:
    """Dependency to access the conversation service."""

    return request.app.state.conversation_service
