from __future__ import annotations

import json

import httpx
import pytest

from chatcore.memory.embedder import EmbeddingError, OllamaEmbedder
from chatcore.providers.base import ProviderError, ProviderRuntimeConfig
from chatcore.providers.ollama_adapter import OllamaAdapter
from chatcore.services.runtime import OllamaRuntimeMonitor

CFG = ProviderRuntimeConfig(model_name="llama3", base_url="http://ollama.local/", temperature=0.7)


def _ndjson(*rows: dict) -> bytes:
    return "\n".join(json.dumps(row) for row in rows).encode("utf-8") + b"\n"


async def _collect(adapter: OllamaAdapter, messages=None):
    return [chunk async for chunk in adapter.stream_chat(CFG, messages or [{"role": "user", "content": "hi"}])]


@pytest.mark.anyio
async def test_stream_chat_decodes_ndjson_lines():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["payload"] = json.loads(request.content)
        body = _ndjson(
            {"message": {"role": "assistant", "thinking": "plan"}, "done": False},
            {"message": {"role": "assistant", "content": "Hel"}, "done": False},
            {"message": {"role": "assistant", "content": "lo"}, "done": False},
            {"done": True, "prompt_eval_count": 12, "eval_count": 4},
            {"message": {"content": "after done"}, "done": False},
        )
        return httpx.Response(200, content=body)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        chunks = await _collect(OllamaAdapter(http_client=client))

    assert seen["url"] == "http://ollama.local/api/chat"
    assert seen["payload"] == {
        "model": "llama3",
        "options": {"temperature": 0.7},
        "messages": [{"role": "user", "content": "hi"}],
        "stream": True,
    }
    assert [c.thinking for c in chunks] == ["plan", "", "", ""]
    assert "".join(c.content for c in chunks) == "Hello"
    assert chunks[-1].done is True
    assert chunks[-1].prompt_tokens == 12
    assert chunks[-1].completion_tokens == 4


@pytest.mark.anyio
async def test_stream_chat_skips_blank_and_garbled_lines():
    def handler(request: httpx.Request) -> httpx.Response:
        body = b'\n\nnot json\n{"message":{"content":"ok"}}\n{"done":true}\n'
        return httpx.Response(200, content=body)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        chunks = await _collect(OllamaAdapter(http_client=client))

    assert [c.content for c in chunks] == ["ok", ""]
    assert chunks[-1].prompt_tokens is None


@pytest.mark.anyio
async def test_stream_error_field_raises_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        body = _ndjson({"message": {"content": "par"}}, {"error": "model ran out of memory"})
        return httpx.Response(200, content=body)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(ProviderError) as exc_info:
            await _collect(OllamaAdapter(http_client=client))

    assert exc_info.value.code == "PROVIDER_STREAM_ERROR"
    assert exc_info.value.message == "model ran out of memory"


@pytest.mark.anyio
async def test_non_2xx_status_carries_upstream_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            500, json={"error": 'do load request: Post "http://127.0.0.1:1/load": EOF'}
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(ProviderError) as exc_info:
            await _collect(OllamaAdapter(http_client=client))

    error = exc_info.value
    assert error.code == "PROVIDER_UPSTREAM"
    assert error.status_code == 500
    assert error.retryable is True
    assert "do load request" in str(error)


@pytest.mark.anyio
async def test_not_found_model_is_bad_status():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "model 'nope' not found"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(ProviderError) as exc_info:
            await _collect(OllamaAdapter(http_client=client))

    assert exc_info.value.code == "PROVIDER_BAD_STATUS"
    assert str(exc_info.value) == "Provider returned 404: model 'nope' not found"


@pytest.mark.anyio
async def test_connection_failure_maps_to_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(ProviderError) as exc_info:
            await _collect(OllamaAdapter(http_client=client))

    assert exc_info.value.code == "PROVIDER_CONNECTION_ERROR"


@pytest.mark.anyio
async def test_list_models_and_version():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "llama3"}, {"name": "qwen3"}, {}]})
        if request.url.path == "/api/version":
            return httpx.Response(200, json={"version": "0.6.2"})
        return httpx.Response(404)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = OllamaAdapter(http_client=client)
        models = await adapter.list_models(
            ProviderRuntimeConfig(model_name="llama3", base_url="http://ollama.local/api")
        )
        version = await adapter.version("http://ollama.local")

    assert models == ["llama3", "qwen3"]
    assert version == "0.6.2"


@pytest.mark.anyio
async def test_runtime_monitor_waits_until_runtime_answers():
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] < 3:
            return httpx.Response(503, text="starting")
        return httpx.Response(200, json={"version": "0.6.2"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        monitor = OllamaRuntimeMonitor(
            OllamaAdapter(http_client=client), "http://ollama.local", attempts=5, interval_sec=0
        )
        status = await monitor.ensure_server_ready()

    assert status.ok is True
    assert status.version == "0.6.2"
    assert attempts["count"] == 3


@pytest.mark.anyio
async def test_runtime_monitor_reports_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="starting")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        monitor = OllamaRuntimeMonitor(
            OllamaAdapter(http_client=client), "http://ollama.local", attempts=2, interval_sec=0
        )
        status = await monitor.ensure_server_ready()

    assert status.ok is False
    assert status.error == "Provider returned 503: starting"


@pytest.mark.anyio
async def test_ollama_embedder_posts_batch_to_embed_endpoint():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, json={"embeddings": [[0.1, 0.2], [0.3, 0.4]]})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        embedder = OllamaEmbedder(
            base_url="http://ollama.local/api", model_name="embeddinggemma", http_client=client
        )
        vectors = await embedder.embed_texts(["a", "b"])

    assert seen["url"] == "http://ollama.local/api/embed"
    assert seen["payload"] == {"model": "embeddinggemma", "input": ["a", "b"]}
    assert vectors == [[0.1, 0.2], [0.3, 0.4]]


@pytest.mark.anyio
async def test_ollama_embedder_rejects_bad_shapes():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"embeddings": [[0.1]]})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        embedder = OllamaEmbedder(
            base_url="http://ollama.local", model_name="embeddinggemma", http_client=client
        )
        with pytest.raises(EmbeddingError):
            await embedder.embed_texts(["a", "b"])
