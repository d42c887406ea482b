from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from chatcore.db.base import create_engine, create_sessionmaker, init_db
from chatcore.memory.retrieval import (
    MEMORY_BLOCK_HEADER,
    MemoryRetrievalService,
    rank_memories,
    render_memories_block,
)
from chatcore.memory.similarity import cosine_similarity
from chatcore.memory.types import Memory
from chatcore.repos.memory_repo import MemoryRepo

BASE_TIME = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)


def _memory(memory_id: str, text: str, embedding: list[float], **kwargs) -> Memory:
    return Memory(id=memory_id, text=text, embedding=embedding, created_at=BASE_TIME, **kwargs)


@pytest.fixture
async def sessionmaker(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'memories.db'}")
    await init_db(engine)
    yield create_sessionmaker(engine)
    await engine.dispose()


def test_cosine_similarity_properties():
    a = [1.0, 2.0, 3.0]
    b = [-2.0, 0.5, 4.0]

    assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))
    assert cosine_similarity(a, a) == pytest.approx(1.0)
    assert cosine_similarity(a, [0.0, 0.0, 0.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [0.0, 0.0]) == 0.0
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0


def test_rank_memories_filters_sorts_and_caps():
    memories = [
        _memory("low", "low", [0.2, 1.0]),
        _memory("best", "best", [1.0, 0.0]),
        _memory("good", "good", [1.0, 0.3]),
        _memory("other-dim", "other", [1.0, 0.0, 0.0]),
        _memory("other-model", "model", [1.0, 0.0], embedding_model="other"),
    ]

    ranked = rank_memories(
        [1.0, 0.0],
        memories,
        candidate_k=10,
        top_k=2,
        min_score=0.5,
        embedding_model="mine",
    )

    assert [row.memory.id for row in ranked] == ["best", "good"]
    assert ranked[0].score >= ranked[1].score >= 0.5


def test_rank_memories_candidate_cap_applies_before_top_k():
    memories = [_memory(str(i), f"m{i}", [1.0, i / 10]) for i in range(5)]

    ranked = rank_memories([1.0, 0.0], memories, candidate_k=2, top_k=6, min_score=0.0)

    assert len(ranked) == 2


def test_render_block_format_and_budget():
    memories = [
        _memory("a", "User likes tea.", [1.0]),
        _memory("b", "User lives in Oslo.", [1.0]),
    ]

    block = render_memories_block(memories, max_chars=2000)
    assert block.text == (
        f"{MEMORY_BLOCK_HEADER}- [2024-05-01 12:30] User likes tea.\n"
        "- [2024-05-01 12:30] User lives in Oslo."
    )
    assert block.count == 2
    assert block.used_chars == len(block.text)

    plain = render_memories_block(memories, max_chars=2000, with_timestamps=False)
    assert plain.text.endswith("- User likes tea.\n- User lives in Oslo.")


def test_render_block_stops_at_first_overflow_and_is_empty_when_nothing_fits():
    memories = [
        _memory("a", "short", [1.0]),
        _memory("b", "x" * 500, [1.0]),
        _memory("c", "tiny", [1.0]),
    ]

    block = render_memories_block(memories, max_chars=60, with_timestamps=False)
    assert block.count == 1
    assert [m.id for m in block.memories] == ["a"]

    empty = render_memories_block(memories, max_chars=10)
    assert empty.text == ""
    assert empty.count == 0


def test_render_block_respects_budget_and_is_monotonic():
    memories = [_memory(str(i), f"memory number {i} " * (i + 1), [1.0]) for i in range(8)]
    previous_count = 0
    for max_chars in range(0, 900, 17):
        block = render_memories_block(memories, max_chars=max_chars)
        assert len(block.text) <= max_chars
        assert block.count >= previous_count
        previous_count = block.count


@pytest.mark.anyio
async def test_retrieval_service_reads_store_and_touches(sessionmaker):
    async with sessionmaker() as db:
        async with db.begin():
            repo = MemoryRepo(db)
            await repo.add(memory_id="m1", text="User likes tea.", embedding=[1.0, 0.0], embedding_model="e")
            await repo.add(memory_id="m2", text="User hates rain.", embedding=[0.0, 1.0], embedding_model="e")

    service = MemoryRetrievalService(sessionmaker, min_score=0.5)
    retrieved = await service.retrieve([0.9, 0.1], embedding_model="e")

    assert retrieved.count == 1
    assert retrieved.memories[0].id == "m1"
    assert "User likes tea." in retrieved.text

    await service.touch_retrieved(["m1"], BASE_TIME)
    async with sessionmaker() as db:
        memory = await MemoryRepo(db).get("m1")
    assert memory is not None
    assert memory.last_retrieved_at == BASE_TIME


@pytest.mark.anyio
async def test_purge_stale_uses_last_retrieved_or_created(sessionmaker):
    now = BASE_TIME + timedelta(days=40)
    async with sessionmaker() as db:
        async with db.begin():
            repo = MemoryRepo(db)
            await repo.add(memory_id="old", text="old", embedding=[1.0], embedding_model=None, created_at=BASE_TIME)
            await repo.add(memory_id="used", text="used", embedding=[1.0], embedding_model=None, created_at=BASE_TIME)
            await repo.add(memory_id="new", text="new", embedding=[1.0], embedding_model=None, created_at=now)
            await repo.touch_retrieved(["used"], now - timedelta(days=1))

    service = MemoryRetrievalService(sessionmaker, retention=timedelta(days=30))
    deleted = await service.purge_stale(timedelta(days=30), now)

    assert deleted == 1
    async with sessionmaker() as db:
        remaining = {memory.id for memory in await MemoryRepo(db).list_all()}
    assert remaining == {"used", "new"}


@pytest.mark.anyio
async def test_maybe_purge_runs_at_most_once_per_interval(sessionmaker):
    service = MemoryRetrievalService(
        sessionmaker, retention=timedelta(days=30), purge_interval=timedelta(hours=6)
    )
    now = BASE_TIME
    async with sessionmaker() as db:
        async with db.begin():
            await MemoryRepo(db).add(
                memory_id="ancient",
                text="ancient",
                embedding=[1.0],
                embedding_model=None,
                created_at=now - timedelta(days=90),
            )

    assert await service.maybe_purge(now) == 1

    async with sessionmaker() as db:
        async with db.begin():
            await MemoryRepo(db).add(
                memory_id="ancient-2",
                text="ancient 2",
                embedding=[1.0],
                embedding_model=None,
                created_at=now - timedelta(days=90),
            )

    assert await service.maybe_purge(now + timedelta(hours=1)) == 0
    assert await service.maybe_purge(now + timedelta(hours=7)) == 1
