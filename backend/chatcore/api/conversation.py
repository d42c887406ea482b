from __future__ import annotations

from fastapi import APIRouter, Depends, status

from chatcore.api.errors import to_http_error
from chatcore.core.security import sanitize_text
from chatcore.schemas.conversation import (
    ConversationCreateRequest,
    ConversationListResponse,
    ConversationOut,
    ConversationPurgeResponse,
    ConversationRenameRequest,
    ConversationSummaryOut,
)
from chatcore.services.conversation_service import (
    ConversationOperationError,
    ConversationService,
    get_conversation_service,
)
from chatcore.services.orchestrator import ChatOrchestrator, get_orchestrator

router = APIRouter(prefix="/api/conversation", tags=["conversation"])

MAX_TITLE_LEN = 200


@router.post("", response_model=ConversationOut, status_code=status.HTTP_201_CREATED)
async def create_conversation(
    payload: ConversationCreateRequest,
    service: ConversationService = Depends(get_conversation_service),
) -> ConversationOut:
    """Create an empty conversation with one active branch."""

    conversation = await service.create(sanitize_text(payload.title or "", MAX_TITLE_LEN))
    return ConversationOut.model_validate(conversation)


@router.post("/temporary", response_model=ConversationOut)
async def new_temporary_conversation(
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> ConversationOut:
    """Start a fresh temporary conversation that is never saved."""

    try:
        conversation = orchestrator.new_temporary_conversation()
    except ConversationOperationError as exc:
        raise to_http_error(exc) from exc
    return ConversationOut.model_validate(conversation)


@router.get("", response_model=ConversationListResponse)
async def list_conversations(
    service: ConversationService = Depends(get_conversation_service),
) -> ConversationListResponse:
    conversations = await service.list_active()
    return ConversationListResponse(
        conversations=[ConversationSummaryOut.model_validate(item) for item in conversations]
    )


@router.get("/trash", response_model=ConversationListResponse)
async def list_trash(
    service: ConversationService = Depends(get_conversation_service),
) -> ConversationListResponse:
    conversations = await service.list_trashed()
    return ConversationListResponse(
        conversations=[ConversationSummaryOut.model_validate(item) for item in conversations]
    )


@router.post("/trash/purge", response_model=ConversationPurgeResponse)
async def purge_trash(
    service: ConversationService = Depends(get_conversation_service),
) -> ConversationPurgeResponse:
    """Permanently delete conversations past the trash retention window."""

    return ConversationPurgeResponse(purged=await service.purge_expired_trash())


@router.get("/{conversation_id}", response_model=ConversationOut)
async def get_conversation(
    conversation_id: str,
    service: ConversationService = Depends(get_conversation_service),
) -> ConversationOut:
    try:
        conversation = await service.get(conversation_id)
    except ConversationOperationError as exc:
        raise to_http_error(exc) from exc
    return ConversationOut.model_validate(conversation)


@router.patch("/{conversation_id}", response_model=ConversationOut)
async def rename_conversation(
    conversation_id: str,
    payload: ConversationRenameRequest,
    service: ConversationService = Depends(get_conversation_service),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> ConversationOut:
    try:
        _ensure_idle(orchestrator, conversation_id)
        conversation = await service.rename(
            conversation_id, sanitize_text(payload.title, MAX_TITLE_LEN)
        )
    except ConversationOperationError as exc:
        raise to_http_error(exc) from exc
    return ConversationOut.model_validate(conversation)


@router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def trash_conversation(
    conversation_id: str,
    service: ConversationService = Depends(get_conversation_service),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> None:
    """Move a conversation to the trash."""

    try:
        _ensure_idle(orchestrator, conversation_id)
        await service.trash(conversation_id)
    except ConversationOperationError as exc:
        raise to_http_error(exc) from exc


@router.post("/{conversation_id}/restore", status_code=status.HTTP_204_NO_CONTENT)
async def restore_conversation(
    conversation_id: str,
    service: ConversationService = Depends(get_conversation_service),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> None:
    try:
        _ensure_idle(orchestrator, conversation_id)
        await service.restore(conversation_id)
    except ConversationOperationError as exc:
        raise to_http_error(exc) from exc


@router.delete("/{conversation_id}/permanent", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation_permanently(
    conversation_id: str,
    service: ConversationService = Depends(get_conversation_service),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> None:
    try:
        _ensure_idle(orchestrator, conversation_id)
        await service.delete_permanently(conversation_id)
    except ConversationOperationError as exc:
        raise to_http_error(exc) from exc


def _ensure_idle(orchestrator: ChatOrchestrator, conversation_id: str) -> None:
    # The streaming turn saves the whole conversation when it ends.
    if orchestrator.is_streaming(conversation_id):
        raise ConversationOperationError(
            "STREAM_ACTIVE", "A response is already streaming in this conversation"
        )
