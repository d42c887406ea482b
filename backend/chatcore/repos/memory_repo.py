from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chatcore.db.models import MemoryRecord
from chatcore.memory.types import Memory
from chatcore.utils.time_utils import as_utc, utc_now

logger = logging.getLogger(__name__)


class MemoryRepo:
    """Repository for long-term memory records."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def list_all(self) -> list[Memory]:
        """Return every stored memory, newest first."""

        result = await self._db.execute(
            select(MemoryRecord).order_by(MemoryRecord.created_at.desc())
        )
        memories: list[Memory] = []
        for record in result.scalars():
            memory = to_memory(record)
            if memory is not None:
                memories.append(memory)
        return memories

    async def get(self, memory_id: str) -> Optional[Memory]:
        """Fetch one memory by ID."""

        record = await self._get_record(memory_id)
        return to_memory(record) if record else None

    async def add(
        self,
        *,
        memory_id: str,
        text: str,
        embedding: Sequence[float],
        embedding_model: Optional[str],
        created_at: Optional[datetime] = None,
    ) -> Memory:
        """Insert a new memory."""

        vector = [float(value) for value in embedding]
        record = MemoryRecord(
            id=memory_id,
            text=text,
            embedding_json=json.dumps(vector, separators=(",", ":")),
            embedding_dim=len(vector),
            embedding_model=embedding_model,
            created_at=created_at or utc_now(),
            updated_at=None,
            last_retrieved_at=None,
        )
        self._db.add(record)
        await self._db.flush()
        return Memory(
            id=record.id,
            text=record.text,
            embedding=vector,
            embedding_model=embedding_model,
            created_at=as_utc(record.created_at),
        )

    async def update(
        self,
        *,
        memory_id: str,
        text: str,
        embedding: Sequence[float],
        embedding_model: Optional[str],
        updated_at: Optional[datetime] = None,
    ) -> Optional[Memory]:
        """Replace text and vector of an existing memory."""

        record = await self._get_record(memory_id)
        if not record:
            return None
        vector = [float(value) for value in embedding]
        record.text = text
        record.embedding_json = json.dumps(vector, separators=(",", ":"))
        record.embedding_dim = len(vector)
        record.embedding_model = embedding_model
        record.updated_at = updated_at or utc_now()
        await self._db.flush()
        return to_memory(record)

    async def delete(self, memory_id: str) -> bool:
        """Hard-delete a memory, returning whether a row was removed."""

        result = await self._db.execute(delete(MemoryRecord).where(MemoryRecord.id == memory_id))
        await self._db.flush()
        return bool(result.rowcount)

    async def touch_retrieved(self, memory_ids: Sequence[str], timestamp: datetime) -> int:
        """Stamp ``last_retrieved_at`` on the given memories."""

        ids = [item for item in memory_ids if item]
        if not ids:
            return 0
        result = await self._db.execute(
            update(MemoryRecord)
            .where(MemoryRecord.id.in_(ids))
            .values(last_retrieved_at=timestamp)
        )
        await self._db.flush()
        return int(result.rowcount or 0)

    async def delete_not_retrieved_since(self, cutoff: datetime) -> int:
        """Delete memories last retrieved (or created, if never retrieved) before ``cutoff``."""

        last_seen = func.coalesce(MemoryRecord.last_retrieved_at, MemoryRecord.created_at)
        result = await self._db.execute(delete(MemoryRecord).where(last_seen < cutoff))
        await self._db.flush()
        return int(result.rowcount or 0)

    async def _get_record(self, memory_id: str) -> Optional[MemoryRecord]:
        result = await self._db.execute(select(MemoryRecord).where(MemoryRecord.id == memory_id))
        return result.scalar_one_or_none()


def to_memory(record: MemoryRecord) -> Optional[Memory]:
    """Convert a stored row to a ``Memory``; rows with corrupt vectors are skipped."""

    try:
        raw = json.loads(record.embedding_json or "[]")
        vector = [float(value) for value in raw] if isinstance(raw, list) else []
    except (json.JSONDecodeError, TypeError, ValueError):
        logger.warning("Skipping memory %s with unreadable embedding", record.id)
        return None
    return Memory(
        id=record.id,
        text=record.text,
        embedding=vector,
        embedding_model=record.embedding_model,
        created_at=as_utc(record.created_at) or utc_now(),
        updated_at=as_utc(record.updated_at),
        last_retrieved_at=as_utc(record.last_retrieved_at),
    )
