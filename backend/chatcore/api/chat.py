from __future__ import annotations

from fastapi import APIRouter, Depends

from chatcore.api.errors import to_http_error
from chatcore.schemas.chat import (
    EditMessageRequest,
    MessageIndexRequest,
    PinThinkingRequest,
    StreamControlResponse,
    SubmitRequest,
    SwitchBranchRequest,
    TurnResponse,
    VariantsResponse,
)
from chatcore.schemas.conversation import BranchOut, ConversationOut, MessageOut
from chatcore.services.conversation_service import ConversationOperationError
from chatcore.services.orchestrator import ChatOrchestrator, TurnResult, get_orchestrator

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.post("/{conversation_id}/messages", response_model=TurnResponse)
async def submit_message(
    conversation_id: str,
    payload: SubmitRequest,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> TurnResponse:
    """Send a user message; tokens stream over the conversation WebSocket."""

    try:
        result = await orchestrator.submit(conversation_id, payload.content)
    except ConversationOperationError as exc:
        raise to_http_error(exc) from exc
    return _turn_response(result)


@router.post("/{conversation_id}/edit", response_model=TurnResponse)
async def edit_message(
    conversation_id: str,
    payload: EditMessageRequest,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> TurnResponse:
    try:
        result = await orchestrator.edit_user_message(
            conversation_id, payload.index, payload.content
        )
    except ConversationOperationError as exc:
        raise to_http_error(exc) from exc
    return _turn_response(result)


@router.post("/{conversation_id}/regenerate", response_model=TurnResponse)
async def regenerate_message(
    conversation_id: str,
    payload: MessageIndexRequest,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> TurnResponse:
    try:
        result = await orchestrator.regenerate(conversation_id, payload.index)
    except ConversationOperationError as exc:
        raise to_http_error(exc) from exc
    return _turn_response(result)


@router.post("/{conversation_id}/delete-from", response_model=ConversationOut)
async def delete_from_index(
    conversation_id: str,
    payload: MessageIndexRequest,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> ConversationOut:
    """Delete a user message and everything after it."""

    try:
        conversation = await orchestrator.delete_from_index(conversation_id, payload.index)
    except ConversationOperationError as exc:
        raise to_http_error(exc) from exc
    return ConversationOut.model_validate(conversation)


@router.post("/{conversation_id}/switch", response_model=ConversationOut)
async def switch_branch(
    conversation_id: str,
    payload: SwitchBranchRequest,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> ConversationOut:
    try:
        conversation = await orchestrator.switch_branch(conversation_id, payload.branch_id)
    except ConversationOperationError as exc:
        raise to_http_error(exc) from exc
    return ConversationOut.model_validate(conversation)


@router.get("/{conversation_id}/variants/{message_id}", response_model=VariantsResponse)
async def list_variants(
    conversation_id: str,
    message_id: str,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> VariantsResponse:
    try:
        conversation, branches = await orchestrator.list_variants(conversation_id, message_id)
    except ConversationOperationError as exc:
        raise to_http_error(exc) from exc
    active_id = conversation.active_branch().id
    active_index = next((i for i, b in enumerate(branches) if b.id == active_id), -1)
    return VariantsResponse(
        message_id=message_id,
        active_branch_id=active_id,
        active_index=active_index,
        branches=[BranchOut.model_validate(branch) for branch in branches],
    )


@router.post("/{conversation_id}/pause", response_model=StreamControlResponse)
async def pause_stream(
    conversation_id: str,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> StreamControlResponse:
    """Stop the open stream; the partial reply is kept."""

    return StreamControlResponse(ok=orchestrator.pause(conversation_id))


@router.post("/{conversation_id}/thinking", response_model=StreamControlResponse)
async def pin_thinking(
    conversation_id: str,
    payload: PinThinkingRequest,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> StreamControlResponse:
    ok = await orchestrator.pin_thinking(conversation_id, payload.open)
    return StreamControlResponse(ok=ok)


def _turn_response(result: TurnResult) -> TurnResponse:
    return TurnResponse(
        status=result.status,
        message=MessageOut.model_validate(result.message),
        memories_used=result.memories_used,
        conversation=ConversationOut.model_validate(result.conversation),
    )
