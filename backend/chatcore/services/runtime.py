from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from chatcore.providers.base import ProviderError
from chatcore.providers.ollama_adapter import OllamaAdapter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuntimeStatus:
    ok: bool
    version: Optional[str] = None
    error: Optional[str] = None


class RuntimeLifecycle(Protocol):
    """Collaborator consulted when the inference runtime looks mid-restart."""

    async def ensure_server_ready(self) -> RuntimeStatus:
        """Return once the runtime answers, or report that it did not."""


class OllamaRuntimeMonitor:
    """Polls ``/api/version`` until the local runtime answers.

    Launching the runtime is left to the host; this only waits for it.
    """

    def __init__(
        self,
        adapter: OllamaAdapter,
        base_url: str,
        *,
        attempts: int = 10,
        interval_sec: float = 0.5,
    ) -> None:
        self._adapter = adapter
        self._base_url = base_url
        self._attempts = max(1, attempts)
        self._interval_sec = interval_sec

    async def ensure_server_ready(self) -> RuntimeStatus:
        last_error: Optional[str] = None
        for attempt in range(self._attempts):
            try:
                version = await self._adapter.version(self._base_url)
                return RuntimeStatus(ok=True, version=version or None)
            except ProviderError as exc:
                last_error = exc.message
                logger.debug("Runtime not ready (attempt %d): %s", attempt + 1, exc.message)
            if attempt + 1 < self._attempts:
                await asyncio.sleep(self._interval_sec)
        logger.warning("Inference runtime did not become ready: %s", last_error)
        return RuntimeStatus(ok=False, error=last_error)
