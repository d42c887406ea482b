from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatcore.conversation.types import new_id
from chatcore.memory.actions import normalize_memory_actions
from chatcore.memory.embedder import Embedder
from chatcore.memory.matcher import DEFAULT_MATCH_THRESHOLD, find_memory_id_by_text
from chatcore.memory.types import Memory, MemoryAction
from chatcore.providers.base import ChatAdapter, ProviderRuntimeConfig
from chatcore.repos.memory_repo import MemoryRepo
from chatcore.utils.json_extract import extract_first_balanced_object

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str, dict[str, Any]], Awaitable[None]]


@dataclass
class MemoryEditorJob:
    """Context for one memory-editing pass over a finished exchange."""

    conversation_id: str
    config: ProviderRuntimeConfig
    history: list[dict[str, str]]
    assistant_reply: str
    retrieved: tuple[Memory, ...] = field(default_factory=tuple)
    temporary: bool = False


def build_editor_system_prompt(retrieved: Sequence[Memory]) -> str:
    """System prompt asking for one line of JSON memory actions."""

    reference = json.dumps(
        [{"id": memory.id, "text": memory.text} for memory in retrieved], ensure_ascii=False
    )
    return (
        "You are the Memory Editor. Your job is to maintain long-term memories about the user.\n"
        "Memories can't reference each other; keep each one self-contained.\n\n"
        "You will be given the chat context (including any retrieved memories).\n"
        "Decide whether to CREATE new memories, UPDATE existing ones, or DELETE useless/duplicated ones.\n\n"
        "Create memories for stable user facts such as: name, pronouns, location/timezone, language, "
        "preferences, dislikes, ongoing projects, recurring goals, constraints, tools they use, "
        "and long-term plans.\n"
        "Prefer 1 memory per fact. Keep each memory short, specific, and directly useful.\n"
        "If a new message refines an existing memory, UPDATE it instead of creating duplicates.\n"
        "If a memory is redundant, wrong, or low-value, DELETE it.\n\n"
        "Output ONLY a single line of JSON, no markdown, no prose, no explanation.\n"
        "Keep your output under 400 characters.\n"
        "Use human-readable memory text to reference existing memories (do NOT include memory ids).\n"
        "Schema:\n"
        '{"actions":[{"type":"create","text":"..."},'
        '{"type":"update","match":"<existing memory text>","text":"...new text..."},'
        '{"type":"delete","match":"<existing memory text>"}]}\n'
        'You may also output {"create":[...],"update":[...],"delete":[...]} as an alternative.\n'
        'Fields "match", "memory", or "target" can point to the existing memory text; '
        "capitalization and small wording differences are acceptable.\n"
        'If no changes are needed, output: {"actions":[]}.\n\n'
        "Examples (format only; do not copy content):\n"
        '{"actions":[{"type":"create","text":"User\'s name is Sarah."}]}\n'
        '{"actions":[{"type":"update","match":"User prefers concise answers.",'
        '"text":"User prefers short, bullet-point answers."}]}\n'
        '{"actions":[{"type":"delete","match":"User said they live in London."}]}\n\n'
        f"Retrieved memories (for reference): {reference}\n"
        "Do not reason at length. Respond with the JSON only."
    )


class MemoryEditorAgent:
    """Single-worker queue that turns finished exchanges into memory edits.

    At most one job runs and at most one waits; a newly enqueued job replaces
    the waiting one.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        adapter: ChatAdapter,
        embedder: Embedder,
        *,
        enabled: bool = True,
        match_threshold: float = DEFAULT_MATCH_THRESHOLD,
        on_status: Optional[StatusCallback] = None,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._adapter = adapter
        self._embedder = embedder
        self.enabled = enabled
        self.match_threshold = match_threshold
        self._on_status = on_status
        self._queued: Optional[MemoryEditorJob] = None
        self._current: Optional[MemoryEditorJob] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._current is not None

    @property
    def queued(self) -> bool:
        return self._queued is not None

    def status(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "running": self.running,
            "queued": self.queued,
            "conversation_id": self._current.conversation_id if self._current else None,
        }

    def enqueue(self, job: MemoryEditorJob) -> bool:
        """Queue ``job``, replacing any job that has not started yet."""

        if job.temporary:
            logger.debug("Memory editor skipped for temporary conversation")
            return False
        if not self.enabled:
            logger.debug("Memory editor disabled; job for %s dropped", job.conversation_id)
            return False
        if self._queued is not None:
            logger.debug("Memory editor job for %s superseded", self._queued.conversation_id)
        self._queued = job
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._drain())
        return True

    def skip(self) -> None:
        """Abort the running job, drop the queued one and go idle."""

        task = self._task
        self._task = None
        self._queued = None
        self._current = None
        if task is not None and not task.done():
            task.cancel()
            logger.info("Memory editor skipped")

    async def wait_idle(self) -> None:
        """Wait until every queued job has been processed."""

        while self._task is not None and not self._task.done():
            task = self._task
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise

    async def shutdown(self) -> None:
        task = self._task
        self.skip()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _drain(self) -> None:
        me = asyncio.current_task()
        try:
            while self._queued is not None:
                job = self._queued
                self._queued = None
                self._current = job
                await self._notify(job.conversation_id, active=True)
                try:
                    await self.run_job(job)
                except Exception:  # noqa: BLE001
                    logger.exception("Memory editor job for %s failed", job.conversation_id)
                finally:
                    if self._task is me:
                        self._current = None
                    await self._notify(job.conversation_id, active=False)
        finally:
            if self._task is me:
                self._task = None
                self._current = None

    async def run_job(self, job: MemoryEditorJob) -> list[MemoryAction]:
        """Ask the model for memory actions and apply the ones that resolve.

        Returns the actions that were applied.
        """

        if job.temporary or not self.enabled:
            return []

        messages = [
            {"role": "system", "content": build_editor_system_prompt(job.retrieved)},
            *job.history,
            {
                "role": "user",
                "content": (
                    "Assistant's last reply (for context):\n"
                    f"{job.assistant_reply}\n\nNow output the JSON memory actions."
                ),
            },
        ]
        cfg = replace(job.config, temperature=0.0)
        parts: list[str] = []
        async for chunk in self._adapter.stream_chat(cfg, messages):
            if chunk.content:
                parts.append(chunk.content)
            if chunk.done:
                break
        output = "".join(parts)
        logger.debug("Memory editor raw output: %.500s", output)

        actions = normalize_memory_actions(extract_first_balanced_object(output))
        if not actions:
            logger.info("Memory editor: no memory changes")
            return []

        applied: list[MemoryAction] = []
        for action in self.resolve_actions(actions, job.retrieved):
            try:
                if await self._apply(action):
                    applied.append(action)
            except Exception:  # noqa: BLE001
                logger.warning("Memory action %s failed", action.type, exc_info=True)
        logger.info("Memory editor applied %d of %d actions", len(applied), len(actions))
        return applied

    def resolve_actions(
        self, actions: Sequence[MemoryAction], retrieved: Sequence[Memory]
    ) -> list[MemoryAction]:
        """Fill in missing ids for update/delete actions from their reference text.

        An explicit id is kept as given.
        """

        resolved: list[MemoryAction] = []
        for action in actions:
            if action.type == "create":
                resolved.append(action)
                continue
            reference = action.match or action.text
            memory_id = action.id or find_memory_id_by_text(
                reference, retrieved, self.match_threshold
            )
            if memory_id is None:
                logger.debug("Unresolved %s action for %r", action.type, reference)
                continue
            resolved.append(replace(action, id=memory_id, match=reference))
        return resolved

    async def _apply(self, action: MemoryAction) -> bool:
        if action.type == "delete":
            async with self._sessionmaker() as db:
                async with db.begin():
                    return await MemoryRepo(db).delete(action.id or "")

        text = (action.text or "").strip()
        if not text:
            return False
        embedding = await self._embedder.embed_text(text)
        async with self._sessionmaker() as db:
            async with db.begin():
                repo = MemoryRepo(db)
                if action.type == "create":
                    await repo.add(
                        memory_id=new_id(),
                        text=text,
                        embedding=embedding,
                        embedding_model=self._embedder.model_name,
                    )
                    return True
                updated = await repo.update(
                    memory_id=action.id or "",
                    text=text,
                    embedding=embedding,
                    embedding_model=self._embedder.model_name,
                )
                return updated is not None

    async def _notify(self, conversation_id: str, *, active: bool) -> None:
        if self._on_status is None:
            return
        payload = {"event": "memory_editor", "active": active, **self.status()}
        try:
            await self._on_status(conversation_id, payload)
        except Exception:  # noqa: BLE001
            logger.debug("Memory editor status callback failed", exc_info=True)
