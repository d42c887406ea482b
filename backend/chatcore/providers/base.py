from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx


@dataclass
class ProviderRuntimeConfig:
    """Runtime configuration needed by a chat adapter."""

    model_name: str
    base_url: str
    temperature: float = 1.0
    provider: str = "ollama"


@dataclass
class StreamChunk:
    """One decoded line of a streamed chat completion."""

    thinking: str = ""
    content: str = ""
    done: bool = False
    final: dict[str, Any] = field(default_factory=dict)

    @property
    def prompt_tokens(self) -> Optional[int]:
        return _get_int(self.final, "prompt_eval_count")

    @property
    def completion_tokens(self) -> Optional[int]:
        return _get_int(self.final, "eval_count")


class ChatAdapter(Protocol):
    """Adapter interface for streaming chat providers."""

    async def list_models(self, cfg: ProviderRuntimeConfig) -> list[str]:
        """List available models for the provider."""

    def stream_chat(
        self, cfg: ProviderRuntimeConfig, messages: list[dict[str, str]]
    ) -> AsyncIterator[StreamChunk]:
        """Stream a chat completion as decoded chunks."""


class ProviderError(RuntimeError):
    """Raised when a provider operation fails."""

    def __init__(
        self,
        code: str,
        message: str,
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable
        self.status_code = status_code


def build_status_error(response: httpx.Response) -> ProviderError:
    """Build a normalized provider error from an HTTP response.

    The response body must already be read.
    """

    status = response.status_code
    message = _extract_response_message(response)
    formatted = f"Provider returned {status}: {message}"
    if status in {408, 429}:
        code = "PROVIDER_TIMEOUT" if status == 408 else "PROVIDER_RATE_LIMIT"
        return ProviderError(code, formatted, retryable=True, status_code=status)
    if status >= 500:
        return ProviderError(
            "PROVIDER_UPSTREAM",
            formatted,
            retryable=True,
            status_code=status,
        )
    return ProviderError("PROVIDER_BAD_STATUS", formatted, status_code=status)


def _extract_response_message(response: httpx.Response) -> str:
    """Extract a concise error message from provider JSON/text payloads."""

    try:
        payload: Any = response.json()
    except ValueError:
        return (response.text or "Unknown error from provider.").strip()

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            detail = error.get("message") or error.get("code")
            if isinstance(detail, str) and detail.strip():
                return detail.strip()
        if isinstance(error, str) and error.strip():
            return error.strip()
        message = payload.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return (response.text or "Unknown error from provider.").strip()


def _get_int(data: dict[str, Any], key: str) -> Optional[int]:
    value = data.get(key)
    if isinstance(value, bool):
        return None
    return int(value) if isinstance(value, int) else None
