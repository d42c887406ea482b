from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from chatcore.conversation.types import Conversation
from chatcore.db.models import ConversationRecord
from chatcore.utils.time_utils import as_utc, utc_now

logger = logging.getLogger(__name__)


class ConversationRepo:
    """Repository for conversation documents."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get(self, conversation_id: str, include_deleted: bool = False) -> Optional[Conversation]:
        """Fetch a conversation by ID; trashed ones only when asked."""

        record = await self._get_record(conversation_id)
        if record is None:
            return None
        if record.deleted_at is not None and not include_deleted:
            return None
        return to_conversation(record)

    async def list_active(self) -> list[Conversation]:
        """Return conversations not in the trash, most recently updated first."""

        result = await self._db.execute(
            select(ConversationRecord)
            .where(ConversationRecord.deleted_at.is_(None))
            .order_by(ConversationRecord.updated_at.desc())
        )
        return _convert_all(result.scalars())

    async def list_trashed(self) -> list[Conversation]:
        """Return trashed conversations, most recently deleted first."""

        result = await self._db.execute(
            select(ConversationRecord)
            .where(ConversationRecord.deleted_at.is_not(None))
            .order_by(ConversationRecord.deleted_at.desc())
        )
        return _convert_all(result.scalars())

    async def put(self, conversation: Conversation) -> Conversation:
        """Insert or replace the stored document."""

        document = json.dumps(conversation.to_dict(), ensure_ascii=False, separators=(",", ":"))
        now = utc_now()
        record = await self._get_record(conversation.id)
        if record is None:
            record = ConversationRecord(
                id=conversation.id,
                title=conversation.title,
                document_json=document,
                created_at=conversation.created_at,
                updated_at=now,
                deleted_at=conversation.deleted_at,
            )
            self._db.add(record)
        else:
            record.title = conversation.title
            record.document_json = document
            record.updated_at = now
            record.deleted_at = conversation.deleted_at
        await self._db.flush()
        return conversation

    async def set_deleted_at(self, conversation_id: str, deleted_at: Optional[datetime]) -> bool:
        """Move a conversation to or from the trash."""

        record = await self._get_record(conversation_id)
        if record is None:
            return False
        record.deleted_at = deleted_at
        await self._db.flush()
        return True

    async def hard_delete(self, conversation_id: str) -> bool:
        """Remove a conversation permanently."""

        result = await self._db.execute(
            delete(ConversationRecord).where(ConversationRecord.id == conversation_id)
        )
        await self._db.flush()
        return bool(result.rowcount)

    async def purge_trashed_before(self, cutoff: datetime) -> int:
        """Permanently delete conversations trashed before ``cutoff``."""

        result = await self._db.execute(
            delete(ConversationRecord).where(
                ConversationRecord.deleted_at.is_not(None),
                ConversationRecord.deleted_at < cutoff,
            )
        )
        await self._db.flush()
        return int(result.rowcount or 0)

    async def _get_record(self, conversation_id: str) -> Optional[ConversationRecord]:
        result = await self._db.execute(
            select(ConversationRecord).where(ConversationRecord.id == conversation_id)
        )
        return result.scalar_one_or_none()


def to_conversation(record: ConversationRecord) -> Optional[Conversation]:
    """Decode a stored document; unreadable documents are skipped."""

    try:
        data = json.loads(record.document_json or "{}")
    except json.JSONDecodeError:
        logger.warning("Skipping conversation %s with unreadable document", record.id)
        return None
    if not isinstance(data, dict):
        return None
    data.setdefault("id", record.id)
    data.setdefault("title", record.title)
    conversation = Conversation.from_dict(data)
    conversation.deleted_at = as_utc(record.deleted_at)
    return conversation


def _convert_all(records) -> list[Conversation]:
    conversations: list[Conversation] = []
    for record in records:
        conversation = to_conversation(record)
        if conversation is not None:
            conversations.append(conversation)
    return conversations
