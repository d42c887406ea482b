from __future__ import annotations

from fastapi import HTTPException, status

from chatcore.services.conversation_service import ConversationOperationError


def operation_status(code: str) -> int:
    if code.endswith("_NOT_FOUND"):
        return status.HTTP_404_NOT_FOUND
    if code == "STREAM_ACTIVE":
        return status.HTTP_409_CONFLICT
    if code == "STREAM_FAILED":
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_400_BAD_REQUEST


def to_http_error(exc: ConversationOperationError) -> HTTPException:
    return HTTPException(status_code=operation_status(exc.code), detail=exc.message)
