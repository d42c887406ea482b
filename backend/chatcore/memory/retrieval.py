from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatcore.memory.similarity import cosine_similarity
from chatcore.memory.types import Memory, RetrievedMemories, ScoredMemory
from chatcore.repos.memory_repo import MemoryRepo
from chatcore.utils.time_utils import utc_now

logger = logging.getLogger(__name__)

MEMORY_BLOCK_HEADER = "Relevant memories:\n"


def rank_memories(
    query_embedding: Sequence[float],
    memories: Iterable[Memory],
    *,
    candidate_k: int,
    top_k: int,
    min_score: float,
    embedding_model: Optional[str] = None,
) -> list[ScoredMemory]:
    """Score every memory by a linear cosine scan and keep the best ones.

    Vectors of a different length, or from a different embedding model when
    ``embedding_model`` is given, are never compared.
    """

    query = [float(value) for value in query_embedding]
    if not query:
        return []

    scored: list[ScoredMemory] = []
    for memory in memories:
        if not memory.id or len(memory.embedding) != len(query):
            continue
        if embedding_model and memory.embedding_model and memory.embedding_model != embedding_model:
            continue
        score = cosine_similarity(query, memory.embedding)
        if score < min_score:
            continue
        scored.append(ScoredMemory(memory=memory, score=score))

    scored.sort(key=lambda row: row.score, reverse=True)
    return scored[: max(0, candidate_k)][: max(0, top_k)]


def render_memories_block(
    memories: Iterable[Memory], *, max_chars: int, with_timestamps: bool = True
) -> RetrievedMemories:
    """Render memories under a fixed header without exceeding ``max_chars``.

    Memories are added greedily and rendering stops at the first one that
    would overflow the budget. Returns an empty block when none fit.
    """

    budget = max(0, int(max_chars))
    if not budget:
        return RetrievedMemories()

    body = ""
    included: list[Memory] = []
    for memory in memories:
        text = (memory.text or "").strip()
        if not text:
            continue
        line = f"- {_timestamp_prefix(memory) if with_timestamps else ''}{text}"
        next_body = f"{body}\n{line}" if body else line
        if len(MEMORY_BLOCK_HEADER) + len(next_body) > budget:
            break
        body = next_body
        included.append(memory)

    if not included:
        return RetrievedMemories()
    block = f"{MEMORY_BLOCK_HEADER}{body}"
    return RetrievedMemories(
        text=block, used_chars=len(block), count=len(included), memories=tuple(included)
    )


def _timestamp_prefix(memory: Memory) -> str:
    moment = memory.updated_at or memory.created_at
    if moment is None:
        return ""
    return f"[{moment.strftime('%Y-%m-%d %H:%M')}] "


class MemoryRetrievalService:
    """Read side of long-term memory: ranked, budgeted retrieval and retention."""

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        *,
        candidate_k: int = 80,
        top_k: int = 6,
        min_score: float = 0.25,
        max_chars: int = 2000,
        with_timestamps: bool = True,
        retention: timedelta = timedelta(days=30),
        purge_interval: timedelta = timedelta(hours=6),
    ) -> None:
        self._sessionmaker = sessionmaker
        self.candidate_k = candidate_k
        self.top_k = top_k
        self.min_score = min_score
        self.max_chars = max_chars
        self.with_timestamps = with_timestamps
        self.retention = retention
        self.purge_interval = purge_interval
        self._last_purge_at: Optional[datetime] = None

    async def retrieve(
        self,
        query_embedding: Sequence[float],
        *,
        candidate_k: Optional[int] = None,
        top_k: Optional[int] = None,
        min_score: Optional[float] = None,
        max_chars: Optional[int] = None,
        embedding_model: Optional[str] = None,
    ) -> RetrievedMemories:
        """Return the memory block for a query embedding."""

        async with self._sessionmaker() as db:
            memories = await MemoryRepo(db).list_all()

        ranked = rank_memories(
            query_embedding,
            memories,
            candidate_k=self.candidate_k if candidate_k is None else candidate_k,
            top_k=self.top_k if top_k is None else top_k,
            min_score=self.min_score if min_score is None else min_score,
            embedding_model=embedding_model,
        )
        rendered = render_memories_block(
            (row.memory for row in ranked),
            max_chars=self.max_chars if max_chars is None else max_chars,
            with_timestamps=self.with_timestamps,
        )
        logger.debug(
            "Memory retrieval: %d scanned, %d ranked, %d rendered (%d chars)",
            len(memories),
            len(ranked),
            rendered.count,
            rendered.used_chars,
        )
        return rendered

    async def touch_retrieved(self, memory_ids: Sequence[str], timestamp: Optional[datetime] = None) -> None:
        """Best-effort update of ``last_retrieved_at``; failures are logged only."""

        if not memory_ids:
            return
        try:
            async with self._sessionmaker() as db:
                async with db.begin():
                    await MemoryRepo(db).touch_retrieved(memory_ids, timestamp or utc_now())
        except Exception:  # noqa: BLE001
            logger.warning("Failed to stamp retrieved memories", exc_info=True)

    async def purge_stale(self, retention: timedelta, now: Optional[datetime] = None) -> int:
        """Delete memories not retrieved within ``retention``."""

        cutoff = (now or utc_now()) - retention
        async with self._sessionmaker() as db:
            async with db.begin():
                deleted = await MemoryRepo(db).delete_not_retrieved_since(cutoff)
        if deleted:
            logger.info("Purged %d stale memories older than %s", deleted, cutoff.isoformat())
        return deleted

    async def maybe_purge(self, now: Optional[datetime] = None) -> int:
        """Run ``purge_stale`` at most once per purge interval."""

        moment = now or utc_now()
        if self.retention <= timedelta(0):
            return 0
        if self._last_purge_at is not None and moment - self._last_purge_at < self.purge_interval:
            return 0
        self._last_purge_at = moment
        try:
            return await self.purge_stale(self.retention, moment)
        except Exception:  # noqa: BLE001
            logger.warning("Stale memory purge failed", exc_info=True)
            return 0
