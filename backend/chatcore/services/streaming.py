from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, TypeVar

from chatcore.conversation.types import Message
from chatcore.providers.base import ChatAdapter, ProviderRuntimeConfig, StreamChunk
from chatcore.services.runtime import RuntimeLifecycle
from chatcore.tools.registry import ToolCall, ToolRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

_LOAD_REQUEST_RE = re.compile(r"do load request", re.IGNORECASE)
_EOF_RE = re.compile(r"\bEOF\b", re.IGNORECASE)


def is_transient_load_fault(message: Optional[str]) -> bool:
    """True when the runtime failed to load the model over a dropped connection."""

    text = str(message or "")
    return bool(_LOAD_REQUEST_RE.search(text) and _EOF_RE.search(text))


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING_THINKING = "streaming_thinking"
    STREAMING_ANSWER = "streaming_answer"
    TOOL_CALL_DETECTED = "tool_call_detected"
    TOOL_EXECUTING = "tool_executing"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"


class StreamAborted(Exception):
    """Raised when the user pauses a stream; partial output is kept."""


@dataclass(frozen=True)
class StreamUpdate:
    """Immutable snapshot of the assistant message a session is producing."""

    conversation_id: str
    message_id: str
    state: StreamState
    content: str
    thinking: str
    thinking_active: bool
    thinking_open: bool
    is_done: bool
    tool_turn_count: int
    tool_trace: tuple[dict[str, Any], ...] = ()
    tokens: Optional[dict[str, Optional[int]]] = None

    def apply_to(self, message: Message) -> None:
        """Fold this snapshot into the caller's copy of the message."""

        message.content = self.content
        message.thinking = self.thinking
        message.is_done = self.is_done
        message.tool_trace = [dict(item) for item in self.tool_trace]
        if self.tokens is not None:
            message.tokens = dict(self.tokens)

    def to_payload(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "message_id": self.message_id,
            "state": self.state.value,
            "content": self.content,
            "thinking": self.thinking,
            "thinking_active": self.thinking_active,
            "thinking_open": self.thinking_open,
            "is_done": self.is_done,
            "tool_turn_count": self.tool_turn_count,
            "tool_trace": list(self.tool_trace),
            "tokens": self.tokens,
        }


UpdateCallback = Callable[[StreamUpdate], Awaitable[None]]


@dataclass
class StreamSession:
    """One in-flight assistant response.

    The session owns its ``message``; callers observe it through
    ``StreamUpdate`` snapshots instead of sharing the object.
    """

    conversation_id: str
    config: ProviderRuntimeConfig
    message: Message = field(default_factory=lambda: Message(role="assistant", is_done=False))
    state: StreamState = StreamState.IDLE
    tool_turn_count: int = 0
    thinking_active: bool = False
    thinking_open: bool = False
    thinking_pinned: bool = False
    error: Optional[str] = None
    abort_event: asyncio.Event = field(default_factory=asyncio.Event)
    _pending: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def aborted(self) -> bool:
        return self.abort_event.is_set()

    def abort(self) -> None:
        """Signal the session to stop and cancel the network read in flight."""

        self.abort_event.set()
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()

    async def abortable(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` so that ``abort()`` cancels it.

        Raises ``StreamAborted`` when the session is or becomes aborted.
        """

        if self.aborted:
            _close_awaitable(awaitable)
            raise StreamAborted()
        task = asyncio.ensure_future(awaitable)
        self._pending = task
        try:
            return await task
        except asyncio.CancelledError:
            if self.aborted and task.cancelled():
                raise StreamAborted() from None
            raise
        finally:
            self._pending = None

    def pin_thinking(self, is_open: bool) -> None:
        """Record a manual open/close of the thinking section."""

        self.thinking_pinned = True
        self.thinking_open = is_open

    def snapshot(self) -> StreamUpdate:
        return StreamUpdate(
            conversation_id=self.conversation_id,
            message_id=self.message.id,
            state=self.state,
            content=self.message.content,
            thinking=self.message.thinking,
            thinking_active=self.thinking_active,
            thinking_open=self.thinking_open,
            is_done=self.message.is_done,
            tool_turn_count=self.tool_turn_count,
            tool_trace=tuple(dict(item) for item in self.message.tool_trace),
            tokens=dict(self.message.tokens) if self.message.tokens else None,
        )


class StreamSessionController:
    """Drive one streamed response through thinking, answer and tool turns."""

    def __init__(
        self,
        adapter: ChatAdapter,
        tools: ToolRegistry,
        runtime: Optional[RuntimeLifecycle] = None,
        *,
        retry_delay_ms: int = 400,
        max_transient_retries: int = 1,
    ) -> None:
        self._adapter = adapter
        self._tools = tools
        self._runtime = runtime
        self._retry_delay_sec = max(0, retry_delay_ms) / 1000.0
        self._max_transient_retries = max(0, max_transient_retries)

    async def run(
        self,
        session: StreamSession,
        messages: list[dict[str, str]],
        max_tool_turns: int,
        on_update: Optional[UpdateCallback] = None,
    ) -> Message:
        """Stream until the answer is final.

        Raises ``StreamAborted`` when the session is aborted (the message is
        left done with its partial content) and re-raises any other failure
        after one restart for transient model-load faults.
        """

        retries_left = self._max_transient_retries
        try:
            while True:
                try:
                    await self._tool_loop(session, messages, max_tool_turns, on_update)
                    break
                except StreamAborted:
                    raise
                except Exception as exc:  # noqa: BLE001
                    if session.aborted:
                        raise StreamAborted() from exc
                    if retries_left <= 0 or not is_transient_load_fault(str(exc)):
                        raise
                    retries_left -= 1
                    logger.warning(
                        "Transient model load fault on %s, restarting stream: %s",
                        session.conversation_id,
                        exc,
                    )
                    await self._ensure_runtime()
                    await self._abortable_sleep(session, self._retry_delay_sec)
        except StreamAborted:
            session.state = StreamState.ABORTED
            session.message.is_done = True
            self._close_thinking(session)
            await self._publish(session, on_update)
            raise
        except Exception as exc:
            session.state = StreamState.FAILED
            session.error = str(exc)
            await self._publish(session, on_update)
            raise

        session.state = StreamState.DONE
        session.message.is_done = True
        await self._publish(session, on_update)
        return session.message

    async def _tool_loop(
        self,
        session: StreamSession,
        messages: list[dict[str, str]],
        max_tool_turns: int,
        on_update: Optional[UpdateCallback],
    ) -> None:
        loop_messages = list(messages)
        session.tool_turn_count = 0
        session.message.tool_trace = []

        while True:
            await self._stream_once(session, loop_messages, on_update)

            call = self._tools.parse_tool_call(session.message.content)
            if call is None or session.tool_turn_count >= max(0, max_tool_turns):
                return

            session.state = StreamState.TOOL_CALL_DETECTED
            await self._publish(session, on_update)
            session.tool_turn_count += 1
            session.state = StreamState.TOOL_EXECUTING
            await self._publish(session, on_update)

            result = await session.abortable(self._tools.execute(call.title, call.arguments))
            result_payload = result.to_dict()
            session.message.tool_trace.append(
                {"tool": call.title, "arguments": call.arguments, "result": result_payload}
            )
            loop_messages.append({"role": "assistant", "content": _raw_call(call)})
            loop_messages.append(
                {
                    "role": "system",
                    "content": f"Tool result ({call.title}): {json.dumps(result_payload, ensure_ascii=False)}",
                }
            )

    async def _stream_once(
        self,
        session: StreamSession,
        messages: list[dict[str, str]],
        on_update: Optional[UpdateCallback],
    ) -> None:
        message = session.message
        message.content = ""
        message.thinking = ""
        message.is_done = False
        session.thinking_active = False
        session.thinking_open = False
        session.thinking_pinned = False
        await self._publish(session, on_update)

        await session.abortable(self._consume(session, list(messages), on_update))

    async def _consume(
        self,
        session: StreamSession,
        messages: list[dict[str, str]],
        on_update: Optional[UpdateCallback],
    ) -> None:
        async for chunk in self._adapter.stream_chat(session.config, messages):
            changed = self._apply_chunk(session, chunk)
            if changed:
                await self._publish(session, on_update)
            if chunk.done:
                break

    @staticmethod
    def _apply_chunk(session: StreamSession, chunk: StreamChunk) -> bool:
        message = session.message
        changed = False
        if chunk.thinking:
            if not session.thinking_active:
                session.thinking_active = True
                session.thinking_open = True
                session.thinking_pinned = False
            session.state = StreamState.STREAMING_THINKING
            message.thinking += chunk.thinking
            changed = True
        if chunk.content:
            StreamSessionController._close_thinking(session)
            session.state = StreamState.STREAMING_ANSWER
            message.content += chunk.content
            changed = True
        if chunk.done:
            prompt = chunk.prompt_tokens
            completion = chunk.completion_tokens
            if prompt is not None or completion is not None:
                message.tokens = {
                    "prompt": prompt,
                    "completion": completion,
                    "total": (prompt or 0) + (completion or 0),
                }
                changed = True
        return changed

    @staticmethod
    def _close_thinking(session: StreamSession) -> None:
        if session.thinking_active:
            session.thinking_active = False
            if not session.thinking_pinned:
                session.thinking_open = False

    @staticmethod
    async def _abortable_sleep(session: StreamSession, delay_sec: float) -> None:
        if delay_sec <= 0:
            if session.aborted:
                raise StreamAborted()
            return
        try:
            await asyncio.wait_for(session.abort_event.wait(), timeout=delay_sec)
        except asyncio.TimeoutError:
            return
        raise StreamAborted()

    async def _ensure_runtime(self) -> None:
        if self._runtime is None:
            return
        try:
            status = await self._runtime.ensure_server_ready()
            if not status.ok:
                logger.warning("Runtime still not ready after restart request: %s", status.error)
        except Exception:  # noqa: BLE001
            logger.warning("ensure_server_ready failed", exc_info=True)

    @staticmethod
    async def _publish(session: StreamSession, on_update: Optional[UpdateCallback]) -> None:
        if on_update is None:
            return
        await on_update(session.snapshot())


def _raw_call(call: ToolCall) -> str:
    return json.dumps({"title": call.title, "arguments": call.arguments}, ensure_ascii=False)


def _close_awaitable(coro: Awaitable[Any]) -> None:
    close = getattr(coro, "close", None)
    if callable(close):
        close()
