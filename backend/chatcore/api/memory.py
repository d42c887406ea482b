from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status

from chatcore.api.errors import to_http_error
from chatcore.memory.editor import MemoryEditorAgent
from chatcore.memory.embedder import EmbeddingError
from chatcore.schemas.memory import (
    MemoryEditorStatusOut,
    MemoryListResponse,
    MemoryOut,
    MemoryWriteRequest,
)
from chatcore.services.conversation_service import ConversationOperationError
from chatcore.services.memory_service import MemoryService, get_memory_service
from chatcore.services.orchestrator import ChatOrchestrator, get_orchestrator

router = APIRouter(prefix="/api/memory", tags=["memory"])


def get_memory_editor(request: Request) -> MemoryEditorAgent:
    """Dependency to access the memory editor agent."""

    return request.app.state.memory_editor


@router.get("", response_model=MemoryListResponse)
async def list_memories(
    service: MemoryService = Depends(get_memory_service),
) -> MemoryListResponse:
    memories = await service.list_memories()
    return MemoryListResponse(memories=[MemoryOut.model_validate(item) for item in memories])


@router.post("", response_model=MemoryOut, status_code=status.HTTP_201_CREATED)
async def create_memory(
    payload: MemoryWriteRequest,
    service: MemoryService = Depends(get_memory_service),
) -> MemoryOut:
    try:
        memory = await service.create_memory(payload.text)
    except ConversationOperationError as exc:
        raise to_http_error(exc) from exc
    except EmbeddingError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return MemoryOut.model_validate(memory)


@router.put("/{memory_id}", response_model=MemoryOut)
async def update_memory(
    memory_id: str,
    payload: MemoryWriteRequest,
    service: MemoryService = Depends(get_memory_service),
) -> MemoryOut:
    try:
        memory = await service.update_memory(memory_id, payload.text)
    except ConversationOperationError as exc:
        raise to_http_error(exc) from exc
    except EmbeddingError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return MemoryOut.model_validate(memory)


@router.delete("/{memory_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_memory(
    memory_id: str,
    service: MemoryService = Depends(get_memory_service),
) -> None:
    try:
        await service.delete_memory(memory_id)
    except ConversationOperationError as exc:
        raise to_http_error(exc) from exc


@router.get("/editor/status", response_model=MemoryEditorStatusOut)
async def memory_editor_status(
    editor: MemoryEditorAgent = Depends(get_memory_editor),
) -> MemoryEditorStatusOut:
    return MemoryEditorStatusOut(**editor.status())


@router.post("/editor/skip", response_model=MemoryEditorStatusOut)
async def skip_memory_editor(
    editor: MemoryEditorAgent = Depends(get_memory_editor),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> MemoryEditorStatusOut:
    """Abort the running memory editor job and drop the queued one."""

    orchestrator.skip_memory_editor()
    return MemoryEditorStatusOut(**editor.status())
