from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from chatcore.api.websocket import WebSocketManager
from chatcore.conversation import branch_tree
from chatcore.conversation.types import TEMP_CONVERSATION_ID, Branch, Conversation, Message
from chatcore.core.config import Settings
from chatcore.memory.editor import MemoryEditorAgent, MemoryEditorJob
from chatcore.memory.embedder import Embedder
from chatcore.memory.retrieval import MemoryRetrievalService
from chatcore.memory.types import RetrievedMemories
from chatcore.providers.base import ProviderRuntimeConfig
from chatcore.services.conversation_service import ConversationOperationError, ConversationService
from chatcore.services.prompt_builder import PromptBuilder
from chatcore.services.streaming import (
    StreamAborted,
    StreamSession,
    StreamSessionController,
    StreamUpdate,
)
from chatcore.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class TurnResult:
    """Outcome of one submitted, edited or regenerated turn."""

    status: str
    conversation: Conversation
    message: Message
    memories_used: int = 0


@dataclass
class SessionHandle:
    """The one open stream session of a conversation."""

    session: StreamSession


class ChatOrchestrator:
    """Glue between the branch tree, streaming, memory and persistence."""

    def __init__(
        self,
        *,
        settings: Settings,
        conversations: ConversationService,
        controller: StreamSessionController,
        prompt_builder: PromptBuilder,
        tools: ToolRegistry,
        ws_manager: WebSocketManager,
        editor: MemoryEditorAgent,
        embedder: Optional[Embedder] = None,
        retrieval: Optional[MemoryRetrievalService] = None,
    ) -> None:
        self._settings = settings
        self._conversations = conversations
        self._controller = controller
        self._prompt_builder = prompt_builder
        self._tools = tools
        self._ws_manager = ws_manager
        self._editor = editor
        self._embedder = embedder
        self._retrieval = retrieval
        self._handles: dict[str, SessionHandle] = {}

    def is_streaming(self, conversation_id: str) -> bool:
        return conversation_id in self._handles

    async def submit(self, conversation_id: str, content: str) -> TurnResult:
        """Append a user message to the active branch and stream the reply."""

        text = _require_text(content)
        handle = self._open_handle(conversation_id)
        try:
            conversation = await self._conversations.get(conversation_id)
            branch_tree.append_message(conversation, Message(role="user", content=text))
            return await self._respond(conversation, handle)
        finally:
            self._close_handle(conversation_id, handle)

    async def edit_user_message(self, conversation_id: str, index: int, content: str) -> TurnResult:
        """Fork before a user message, replace it, and stream a new reply."""

        text = _require_text(content)
        handle = self._open_handle(conversation_id)
        try:
            conversation = await self._conversations.get(conversation_id)
            original = _message_at(conversation, index, "user")
            replacement = Message(
                role="user",
                content=text,
                id=original.id,
                attachments=[dict(item) for item in original.attachments],
            )
            branch_tree.fork_and_switch(conversation, index, index, replacement)
            return await self._respond(conversation, handle)
        finally:
            self._close_handle(conversation_id, handle)

    async def regenerate(self, conversation_id: str, index: int) -> TurnResult:
        """Fork after the user message that produced an assistant reply and stream anew."""

        handle = self._open_handle(conversation_id)
        try:
            conversation = await self._conversations.get(conversation_id)
            _message_at(conversation, index, "assistant")
            user_index = next(
                (i for i in range(index - 1, -1, -1) if conversation.messages[i].role == "user"),
                None,
            )
            if user_index is None:
                raise ConversationOperationError(
                    "INVALID_INDEX", "No user message precedes this reply"
                )
            branch_tree.fork_and_switch(conversation, user_index + 1, user_index)
            return await self._respond(conversation, handle)
        finally:
            self._close_handle(conversation_id, handle)

    async def delete_from_index(self, conversation_id: str, index: int) -> Conversation:
        self._ensure_idle(conversation_id)
        conversation = await self._conversations.get(conversation_id)
        if not branch_tree.delete_from_index(conversation, index):
            raise ConversationOperationError("INVALID_INDEX", "Index is not a user message")
        await self._conversations.save(conversation)
        return conversation

    async def switch_branch(self, conversation_id: str, branch_id: str) -> Conversation:
        self._ensure_idle(conversation_id)
        conversation = await self._conversations.get(conversation_id)
        if not branch_tree.switch_active_branch(conversation, branch_id):
            raise ConversationOperationError("BRANCH_NOT_FOUND", "Branch not found")
        await self._conversations.save(conversation)
        return conversation

    async def list_variants(self, conversation_id: str, message_id: str) -> tuple[Conversation, list[Branch]]:
        """Branches holding a user message, for "variant i of N" navigation."""

        conversation = await self._conversations.get(conversation_id)
        variants = branch_tree.list_branches_for_user_message(conversation, message_id)
        if not variants:
            raise ConversationOperationError("MESSAGE_NOT_FOUND", "Message not found")
        return conversation, variants

    def pause(self, conversation_id: str) -> bool:
        """Abort the open stream of a conversation, keeping partial output."""

        handle = self._handles.get(conversation_id)
        if handle is None:
            return False
        handle.session.abort()
        return True

    async def pin_thinking(self, conversation_id: str, is_open: bool) -> bool:
        handle = self._handles.get(conversation_id)
        if handle is None:
            return False
        handle.session.pin_thinking(is_open)
        await self._broadcast_update(handle.session.snapshot())
        return True

    def skip_memory_editor(self) -> None:
        self._editor.skip()

    def new_temporary_conversation(self) -> Conversation:
        self._ensure_idle(TEMP_CONVERSATION_ID)
        return self._conversations.new_temporary()

    async def shutdown(self) -> None:
        for handle in list(self._handles.values()):
            handle.session.abort()
        await self._editor.shutdown()

    async def _respond(self, conversation: Conversation, handle: SessionHandle) -> TurnResult:
        history = list(conversation.messages)
        await self._conversations.save(conversation)

        session = handle.session
        assistant = Message(role="assistant", id=session.message.id, is_done=False)
        branch_tree.append_message(conversation, assistant)

        query = next((m.content for m in reversed(history) if m.role == "user"), "")
        retrieved = RetrievedMemories()

        async def on_update(update: StreamUpdate) -> None:
            update.apply_to(assistant)
            await self._broadcast_update(update)

        await self._broadcast_state(conversation.id, streaming=True, state="streaming")
        try:
            retrieved = await self._retrieve_memories(query, session)
            prompt_messages = self._prompt_builder.build_messages(
                history,
                user_system_prompt=self._settings.system_prompt,
                tools_block=self._tools.system_prompt(),
                memory_block=retrieved.text,
            )
            await self._controller.run(
                session, prompt_messages, self._settings.max_tool_turns, on_update
            )
        except StreamAborted:
            assistant.is_done = True
            await self._save_quietly(conversation)
            await self._broadcast_state(conversation.id, streaming=False, state="aborted")
            return TurnResult("aborted", conversation, assistant, retrieved.count)
        except Exception as exc:
            logger.warning("Stream for %s failed: %s", conversation.id, exc)
            _remove_message(conversation, assistant)
            await self._save_quietly(conversation)
            await self._ws_manager.broadcast(
                conversation.id,
                {"event": "error", "code": "STREAM_FAILED", "message": str(exc)},
            )
            await self._broadcast_state(conversation.id, streaming=False, state="failed")
            raise ConversationOperationError("STREAM_FAILED", str(exc) or "Stream failed") from exc

        await self._conversations.save(conversation)
        await self._broadcast_state(conversation.id, streaming=False, state="done")
        self._editor.enqueue(
            MemoryEditorJob(
                conversation_id=conversation.id,
                config=session.config,
                history=[row for row in prompt_messages if row["role"] != "system"],
                assistant_reply=assistant.content,
                retrieved=retrieved.memories,
                temporary=conversation.is_temporary,
            )
        )
        return TurnResult("done", conversation, assistant, retrieved.count)

    async def _retrieve_memories(self, query: str, session: StreamSession) -> RetrievedMemories:
        """Memory block for this turn; failures degrade to no memories.

        Pausing the session while the query is embedded raises ``StreamAborted``.
        """

        if self._retrieval is None or self._embedder is None or not query.strip():
            return RetrievedMemories()
        try:
            embedding = await session.abortable(self._embedder.embed_text(query))
            retrieved = await self._retrieval.retrieve(
                embedding, embedding_model=self._embedder.model_name
            )
        except StreamAborted:
            raise
        except Exception:  # noqa: BLE001
            logger.warning("Memory retrieval failed", exc_info=True)
            return RetrievedMemories()
        await self._retrieval.touch_retrieved([memory.id for memory in retrieved.memories])
        await self._retrieval.maybe_purge()
        return retrieved

    def _runtime_config(self) -> ProviderRuntimeConfig:
        return ProviderRuntimeConfig(
            model_name=self._settings.chat_model,
            base_url=self._settings.ollama_base_url,
            temperature=self._settings.clamped_temperature(),
        )

    def _open_handle(self, conversation_id: str) -> SessionHandle:
        self._ensure_idle(conversation_id)
        handle = SessionHandle(
            session=StreamSession(conversation_id=conversation_id, config=self._runtime_config())
        )
        self._handles[conversation_id] = handle
        return handle

    def _close_handle(self, conversation_id: str, handle: SessionHandle) -> None:
        if self._handles.get(conversation_id) is handle:
            self._handles.pop(conversation_id, None)

    def _ensure_idle(self, conversation_id: str) -> None:
        if conversation_id in self._handles:
            raise ConversationOperationError(
                "STREAM_ACTIVE", "A response is already streaming in this conversation"
            )

    async def _save_quietly(self, conversation: Conversation) -> None:
        try:
            await self._conversations.save(conversation)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to save conversation %s", conversation.id)

    async def _broadcast_update(self, update: StreamUpdate) -> None:
        await self._ws_manager.broadcast(
            update.conversation_id, {"event": "stream_update", **update.to_payload()}
        )

    async def _broadcast_state(self, conversation_id: str, *, streaming: bool, state: str) -> None:
        await self._ws_manager.broadcast(
            conversation_id,
            {"event": "stream_state", "streaming": streaming, "state": state},
        )


def _require_text(content: str) -> str:
    text = (content or "").strip()
    if not text:
        raise ConversationOperationError("INVALID_MESSAGE", "Message must not be empty")
    return text


def _message_at(conversation: Conversation, index: int, role: str) -> Message:
    messages = conversation.messages
    if index < 0 or index >= len(messages) or messages[index].role != role:
        raise ConversationOperationError("INVALID_INDEX", f"Index {index} is not a {role} message")
    return messages[index]


def _remove_message(conversation: Conversation, message: Message) -> None:
    messages = conversation.messages
    for position in range(len(messages) - 1, -1, -1):
        if messages[position] is message:
            del messages[position]
            return


def get_orchestrator(request: Request) -> ChatOrchestrator:
    """Dependency to access the chat orchestrator."""

    return request.app.state.orchestrator
