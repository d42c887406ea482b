from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Optional

import httpx

from chatcore.providers.base import (
    ProviderError,
    ProviderRuntimeConfig,
    StreamChunk,
    build_status_error,
)

logger = logging.getLogger(__name__)


class OllamaAdapter:
    """Adapter for the Ollama local API."""

    def __init__(self, timeout_sec: float = 300, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self._timeout = timeout_sec
        self._client = http_client

    async def list_models(self, cfg: ProviderRuntimeConfig) -> list[str]:
        url = self._join_url(cfg.base_url, "/api/tags")
        data = await self._request_json("GET", url)
        models = [item.get("name") for item in data.get("models", []) if item.get("name")]
        if not models:
            raise ProviderError("PROVIDER_NO_MODELS", "No models returned by provider.")
        return models

    async def version(self, base_url: str) -> str:
        """Return the runtime version string; raises ``ProviderError`` when unreachable."""

        data = await self._request_json("GET", self._join_url(base_url, "/api/version"))
        return str(data.get("version") or "")

    async def stream_chat(
        self, cfg: ProviderRuntimeConfig, messages: list[dict[str, str]]
    ) -> AsyncIterator[StreamChunk]:
        """Stream ``/api/chat`` and yield one chunk per NDJSON line.

        Stops after the ``done`` line. A non-2xx status or an ``error`` field
        raises ``ProviderError`` carrying the upstream message.
        """

        url = self._join_url(cfg.base_url, "/api/chat")
        payload = {
            "model": cfg.model_name,
            "options": {"temperature": cfg.temperature},
            "messages": messages,
            "stream": True,
        }
        if self._client:
            async for chunk in self._stream_lines(self._client, url, payload):
                yield chunk
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            async for chunk in self._stream_lines(client, url, payload):
                yield chunk

    async def _stream_lines(
        self, client: httpx.AsyncClient, url: str, payload: dict[str, Any]
    ) -> AsyncIterator[StreamChunk]:
        try:
            async with client.stream("POST", url, json=payload) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise build_status_error(response)
                async for line in response.aiter_lines():
                    chunk = self._parse_line(line)
                    if chunk is None:
                        continue
                    yield chunk
                    if chunk.done:
                        return
        except httpx.TimeoutException as exc:
            raise ProviderError(
                "PROVIDER_TIMEOUT", "Provider request timed out.", retryable=True
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderError(
                "PROVIDER_CONNECTION_ERROR",
                f"Provider connection failed: {exc}",
                retryable=True,
            ) from exc

    @staticmethod
    def _parse_line(line: str) -> Optional[StreamChunk]:
        raw = line.strip()
        if not raw:
            return None
        try:
            data: Any = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Skipping undecodable stream line: %.200s", raw)
            return None
        if not isinstance(data, dict):
            return None
        error = data.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else error
            raise ProviderError("PROVIDER_STREAM_ERROR", str(message or "Unknown stream error."))

        message = data.get("message") if isinstance(data.get("message"), dict) else {}
        thinking = message.get("thinking")
        content = message.get("content")
        done = bool(data.get("done"))
        return StreamChunk(
            thinking=thinking if isinstance(thinking, str) else "",
            content=content if isinstance(content, str) else "",
            done=done,
            final=data if done else {},
        )

    async def _request_json(
        self, method: str, url: str, json: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        response = await self._request(method, url, json=json)
        try:
            return response.json()
        except ValueError as exc:  # noqa: BLE001
            raise ProviderError("PROVIDER_PARSE_ERROR", "Invalid JSON from provider.") from exc

    async def _request(
        self, method: str, url: str, json: Optional[dict[str, Any]] = None
    ) -> httpx.Response:
        try:
            if self._client:
                response = await self._client.request(method, url, json=json)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(method, url, json=json)
        except httpx.TimeoutException as exc:
            raise ProviderError(
                "PROVIDER_TIMEOUT", "Provider request timed out.", retryable=True
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderError(
                "PROVIDER_CONNECTION_ERROR",
                "Provider connection failed.",
                retryable=True,
            ) from exc
        if response.status_code >= 400:
            raise build_status_error(response)
        return response

    @staticmethod
    def _join_url(base_url: Optional[str], path: str) -> str:
        if not base_url:
            raise ProviderError("PROVIDER_BASE_URL_MISSING", "Base URL is required for Ollama.")
        base = base_url.rstrip("/")
        if base.endswith("/api") and path.startswith("/api/"):
            return base + path[4:]
        return base + path
