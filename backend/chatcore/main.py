from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatcore.api import chat as chat_api
from chatcore.api import conversation as conversation_api
from chatcore.api import memory as memory_api
from chatcore.api import websocket as websocket_api
from chatcore.core.config import get_settings
from chatcore.core.logging import setup_logging
from chatcore.db.base import create_engine, create_sessionmaker, init_db
from chatcore.memory.editor import MemoryEditorAgent
from chatcore.providers.base import ChatAdapter
from chatcore.providers.ollama_adapter import OllamaAdapter
from chatcore.services.conversation_service import ConversationService
from chatcore.services.memory_service import (
    MemoryService,
    create_embedder,
    create_retrieval_service,
)
from chatcore.services.orchestrator import ChatOrchestrator
from chatcore.services.prompt_builder import PromptBuilder
from chatcore.services.runtime import OllamaRuntimeMonitor
from chatcore.services.streaming import StreamSessionController
from chatcore.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


def create_app(adapter: Optional[ChatAdapter] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    ``adapter`` replaces the Ollama chat adapter, mainly for tests.
    """

    settings = get_settings()
    setup_logging(settings.log_level)

    engine = create_engine(settings.db_url)
    sessionmaker = create_sessionmaker(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db(engine)
        try:
            await app.state.conversation_service.purge_expired_trash()
        except Exception:  # noqa: BLE001
            logger.warning("Trash purge at startup failed", exc_info=True)
        yield
        await app.state.orchestrator.shutdown()
        await engine.dispose()

    app = FastAPI(lifespan=lifespan)
    app.state.engine = engine
    app.state.sessionmaker = sessionmaker
    app.state.ws_manager = websocket_api.WebSocketManager()
    ollama = OllamaAdapter(timeout_sec=settings.request_timeout_sec)
    app.state.adapter = adapter or ollama
    app.state.tool_registry = ToolRegistry()
    app.state.embedder = create_embedder(settings)
    app.state.conversation_service = ConversationService(
        sessionmaker, trash_retention=timedelta(days=settings.trash_retention_days)
    )
    app.state.memory_service = MemoryService(sessionmaker, app.state.embedder)
    app.state.memory_retrieval = create_retrieval_service(
        sessionmaker=sessionmaker, settings=settings
    )
    app.state.memory_editor = MemoryEditorAgent(
        sessionmaker,
        app.state.adapter,
        app.state.embedder,
        enabled=settings.memory_enabled and settings.memory_updates_enabled,
        match_threshold=settings.memory_match_threshold,
        on_status=app.state.ws_manager.broadcast,
    )
    app.state.stream_controller = StreamSessionController(
        app.state.adapter,
        app.state.tool_registry,
        OllamaRuntimeMonitor(ollama, settings.ollama_base_url),
        retry_delay_ms=settings.transient_retry_delay_ms,
    )
    app.state.orchestrator = ChatOrchestrator(
        settings=settings,
        conversations=app.state.conversation_service,
        controller=app.state.stream_controller,
        prompt_builder=PromptBuilder(max_history=settings.max_history_messages),
        tools=app.state.tool_registry,
        ws_manager=app.state.ws_manager,
        editor=app.state.memory_editor,
        embedder=app.state.embedder,
        retrieval=app.state.memory_retrieval,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(conversation_api.router)
    app.include_router(chat_api.router)
    app.include_router(memory_api.router)
    app.include_router(websocket_api.router)

    return app


app = create_app()
