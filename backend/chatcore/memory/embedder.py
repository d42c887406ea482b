from __future__ import annotations

import hashlib
import math
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any, Optional

import httpx


class EmbeddingError(RuntimeError):
    """Raised when embedding generation fails."""


class Embedder(ABC):
    """Embedding interface for pluggable providers."""

    provider: str
    model_name: str

    @abstractmethod
    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        """Generate vectors for each text input."""

    async def embed_text(self, text: str) -> list[float]:
        """Embed one text and return its vector."""

        vectors = await self.embed_texts([text])
        if len(vectors) != 1:
            raise EmbeddingError("Embedding response count mismatch")
        return vectors[0]


class DeterministicEmbedder(Embedder):
    """Offline deterministic embedding generator for tests and local runs."""

    provider = "deterministic"

    def __init__(self, dimension: int, model_name: str = "deterministic-v1") -> None:
        if dimension <= 0:
            raise EmbeddingError("Embedding dimension must be > 0")
        self.dimension = int(dimension)
        self.model_name = model_name

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        return [self._embed_single(text) for text in texts]

    def _embed_single(self, text: str) -> list[float]:
        cleaned = text.strip().lower()
        vector = [0.0] * self.dimension
        if not cleaned:
            vector[0] = 1.0
            return vector

        for token in self._tokenize(cleaned):
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=16).digest()
            index = int.from_bytes(digest[:4], byteorder="big") % self.dimension
            sign = 1.0 if digest[4] % 2 == 0 else -1.0
            magnitude = 1.0 + (digest[5] / 255.0)
            vector[index] += sign * magnitude
        return _normalize_vector(vector)

    @staticmethod
    def _tokenize(text: str) -> list[str]:
        tokens: list[str] = []
        buffer: list[str] = []
        for ch in text:
            if ch.isalnum() or ch in {"_", "-"}:
                buffer.append(ch)
                continue
            if buffer:
                tokens.append("".join(buffer))
                buffer.clear()
            if not ch.isspace():
                tokens.append(ch)
        if buffer:
            tokens.append("".join(buffer))
        return tokens


class OllamaEmbedder(Embedder):
    """Embeddings from the local Ollama ``/api/embed`` endpoint."""

    provider = "ollama"

    def __init__(
        self,
        *,
        base_url: str,
        model_name: str,
        timeout_sec: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not model_name.strip():
            raise EmbeddingError("Embedding model name is empty")
        self.model_name = model_name.strip()
        self._timeout_sec = timeout_sec
        self._client = http_client
        base = base_url.rstrip("/")
        if base.endswith("/api"):
            base = base[:-4]
        self._endpoint = f"{base}/api/embed"

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        payload = {"model": self.model_name, "input": list(texts)}

        try:
            if self._client:
                response = await self._client.post(
                    self._endpoint, json=payload, timeout=self._timeout_sec
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout_sec) as client:
                    response = await client.post(self._endpoint, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise EmbeddingError(f"Ollama embedding request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise EmbeddingError("Embedding response is not JSON") from exc
        return self._parse_embeddings(data, len(texts))

    @staticmethod
    def _parse_embeddings(payload: Any, expected_size: int) -> list[list[float]]:
        rows = payload.get("embeddings") if isinstance(payload, dict) else None
        if rows is None and isinstance(payload, dict) and "embedding" in payload:
            rows = [payload["embedding"]]
        if not isinstance(rows, list) or len(rows) != expected_size:
            raise EmbeddingError("Embedding response shape is invalid")

        vectors: list[list[float]] = []
        for row in rows:
            if not isinstance(row, list) or not row:
                raise EmbeddingError("Embedding row is missing vector data")
            try:
                vectors.append([float(value) for value in row])
            except (TypeError, ValueError) as exc:
                raise EmbeddingError("Embedding contains non-numeric values") from exc
        return vectors


def _normalize_vector(vector: list[float]) -> list[float]:
    norm = math.sqrt(sum(item * item for item in vector))
    if norm <= 0:
        return vector
    return [item / norm for item in vector]
