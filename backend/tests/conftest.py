import asyncio
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import httpx
import pytest

from chatcore.core.config import get_settings
from chatcore.db.base import init_db
from chatcore.main import create_app
from chatcore.providers.base import ProviderError, ProviderRuntimeConfig, StreamChunk

EDITOR_PROMPT_PREFIX = "You are the Memory Editor"


@pytest.fixture
def stub_adapter():
    return StubAdapter()


@pytest.fixture
def app(tmp_path, monkeypatch, stub_adapter):
    db_path = tmp_path / "test_chatcore.db"
    monkeypatch.setenv("DB_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("EMBED_PROVIDER", "deterministic")
    monkeypatch.setenv("EMBED_MODEL", "deterministic-test")
    monkeypatch.setenv("EMBED_DIM", "64")
    monkeypatch.setenv("TRANSIENT_RETRY_DELAY_MS", "0")
    get_settings.cache_clear()
    app = create_app(adapter=stub_adapter)
    yield app
    get_settings.cache_clear()


@pytest.fixture
async def client(app):
    await init_db(app.state.engine)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await app.state.orchestrator.shutdown()
    await app.state.engine.dispose()


@pytest.fixture
def anyio_backend():
    return "asyncio"


def chunks_from_lines(lines: list[dict]) -> list[StreamChunk]:
    """Turn NDJSON-style dicts into adapter chunks."""

    chunks = []
    for line in lines:
        message = line.get("message") or {}
        done = bool(line.get("done"))
        chunks.append(
            StreamChunk(
                thinking=message.get("thinking", ""),
                content=message.get("content", ""),
                done=done,
                final=line if done else {},
            )
        )
    return chunks


class StubAdapter:
    """Adapter stub that replays scripted streams instead of calling Ollama.

    Chat calls pop ``chat_scripts`` (falling back to a "Hi" reply); memory
    editor calls pop ``editor_scripts`` (falling back to no actions). A script
    item that is an exception is raised instead of streaming. Setting ``gate``
    holds chat streams until the event is set.
    """

    def __init__(self) -> None:
        self.chat_scripts: list = []
        self.editor_scripts: list = []
        self.chat_calls: list[list[dict]] = []
        self.editor_calls: list[list[dict]] = []
        self.configs: list[ProviderRuntimeConfig] = []
        self.gate: Optional[asyncio.Event] = None

    async def list_models(self, cfg: ProviderRuntimeConfig) -> list[str]:
        return [cfg.model_name or "stub-model"]

    async def stream_chat(self, cfg: ProviderRuntimeConfig, messages: list[dict]):
        self.configs.append(cfg)
        is_editor = bool(messages) and messages[0]["content"].startswith(EDITOR_PROMPT_PREFIX)
        if is_editor:
            self.editor_calls.append(list(messages))
            script = self.editor_scripts.pop(0) if self.editor_scripts else [
                {"message": {"content": '{"actions":[]}'}},
                {"done": True},
            ]
        else:
            self.chat_calls.append(list(messages))
            if self.gate is not None:
                await self.gate.wait()
            script = self.chat_scripts.pop(0) if self.chat_scripts else [
                {"message": {"content": "Hi"}},
                {"done": True, "prompt_eval_count": 2, "eval_count": 1},
            ]
        if isinstance(script, Exception):
            raise script
        for chunk in chunks_from_lines(script):
            yield chunk


def transient_fault() -> ProviderError:
    return ProviderError(
        "PROVIDER_UPSTREAM",
        'Provider returned 500: do load request: Post "http://127.0.0.1:40123/load": EOF',
        retryable=True,
        status_code=500,
    )
