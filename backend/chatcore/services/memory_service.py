from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatcore.conversation.types import new_id
from chatcore.core.config import Settings
from chatcore.memory.embedder import DeterministicEmbedder, Embedder, OllamaEmbedder
from chatcore.memory.retrieval import MemoryRetrievalService
from chatcore.memory.types import Memory
from chatcore.repos.memory_repo import MemoryRepo
from chatcore.services.conversation_service import ConversationOperationError

logger = logging.getLogger(__name__)


class MemoryService:
    """Direct user edits to the memory store."""

    def __init__(
        self, sessionmaker: async_sessionmaker[AsyncSession], embedder: Embedder
    ) -> None:
        self._sessionmaker = sessionmaker
        self._embedder = embedder

    async def list_memories(self) -> list[Memory]:
        async with self._sessionmaker() as db:
            return await MemoryRepo(db).list_all()

    async def create_memory(self, text: str) -> Memory:
        cleaned = _clean(text)
        embedding = await self._embedder.embed_text(cleaned)
        async with self._sessionmaker() as db:
            async with db.begin():
                return await MemoryRepo(db).add(
                    memory_id=new_id(),
                    text=cleaned,
                    embedding=embedding,
                    embedding_model=self._embedder.model_name,
                )

    async def update_memory(self, memory_id: str, text: str) -> Memory:
        cleaned = _clean(text)
        embedding = await self._embedder.embed_text(cleaned)
        async with self._sessionmaker() as db:
            async with db.begin():
                memory = await MemoryRepo(db).update(
                    memory_id=memory_id,
                    text=cleaned,
                    embedding=embedding,
                    embedding_model=self._embedder.model_name,
                )
        if memory is None:
            raise ConversationOperationError("MEMORY_NOT_FOUND", "Memory not found")
        return memory

    async def delete_memory(self, memory_id: str) -> None:
        async with self._sessionmaker() as db:
            async with db.begin():
                deleted = await MemoryRepo(db).delete(memory_id)
        if not deleted:
            raise ConversationOperationError("MEMORY_NOT_FOUND", "Memory not found")


def create_embedder(settings: Settings, http_client=None) -> Embedder:
    """Factory for the configured embedding provider."""

    provider = settings.embed_provider.strip().lower()
    if provider == "deterministic":
        model_name = settings.embed_model.strip() or "deterministic-v1"
        return DeterministicEmbedder(dimension=settings.embed_dim, model_name=model_name)
    if provider == "ollama":
        return OllamaEmbedder(
            base_url=settings.ollama_base_url,
            model_name=settings.embed_model.strip() or "embeddinggemma",
            timeout_sec=settings.request_timeout_sec,
            http_client=http_client,
        )
    logger.warning("Unknown EMBED_PROVIDER=%s; fallback to deterministic", provider)
    return DeterministicEmbedder(dimension=settings.embed_dim)


def create_retrieval_service(
    *, sessionmaker: async_sessionmaker[AsyncSession], settings: Settings
) -> Optional[MemoryRetrievalService]:
    """Retrieval service configured from settings, or None when memory is off."""

    if not settings.memory_enabled:
        return None
    return MemoryRetrievalService(
        sessionmaker,
        candidate_k=settings.memory_candidate_k,
        top_k=settings.memory_top_k,
        min_score=settings.memory_min_score,
        max_chars=settings.memory_max_chars,
        with_timestamps=settings.memory_timestamps,
        retention=timedelta(days=settings.memory_retention_days),
        purge_interval=timedelta(hours=settings.memory_purge_interval_hours),
    )


def _clean(text: str) -> str:
    cleaned = (text or "").strip()
    if not cleaned:
        raise ConversationOperationError("INVALID_MEMORY", "Memory text must not be empty")
    return cleaned


def get_memory_service(request: Request) -> MemoryService:
    """Dependency to access the memory service."""

    return request.app.state.memory_service
