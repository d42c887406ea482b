from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

router = APIRouter()


class WebSocketManager:
    """Manage active WebSocket connections per conversation."""

    def __init__(self) -> None:
        self._connections: dict[str, set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, conversation_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.setdefault(conversation_id, set()).add(websocket)

    async def disconnect(self, conversation_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            connections = self._connections.get(conversation_id)
            if not connections:
                return
            connections.discard(websocket)
            if not connections:
                self._connections.pop(conversation_id, None)

    async def broadcast(self, conversation_id: str, payload: dict) -> None:
        async with self._lock:
            connections = list(self._connections.get(conversation_id, set()))
        if not connections:
            return
        stale: list[WebSocket] = []
        for websocket in connections:
            try:
                await websocket.send_json(payload)
            except Exception:  # noqa: BLE001
                stale.append(websocket)
        for websocket in stale:
            await self.disconnect(conversation_id, websocket)


def get_ws_manager(websocket: WebSocket) -> WebSocketManager:
    """Dependency to access the WebSocket manager from app state."""

    return websocket.app.state.ws_manager


@router.websocket("/ws/{conversation_id}")
async def ws_conversation(
    websocket: WebSocket,
    conversation_id: str,
    manager: WebSocketManager = Depends(get_ws_manager),
) -> None:
    """WebSocket endpoint for stream and memory editor updates."""

    await manager.connect(conversation_id, websocket)
    orchestrator = websocket.app.state.orchestrator
    await websocket.send_json(
        {
            "event": "stream_state",
            "streaming": orchestrator.is_streaming(conversation_id),
            "state": "streaming" if orchestrator.is_streaming(conversation_id) else "idle",
        }
    )
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        await manager.disconnect(conversation_id, websocket)
