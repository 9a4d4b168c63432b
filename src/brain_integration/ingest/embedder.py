"""Embedding abstractions and deterministic baseline implementation."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from hashlib import blake2b
from math import sqrt

import httpx

from brain_integration.errors import StoreUnreachableError

logger = logging.getLogger(__name__)

_TOKEN_PATTERN = re.compile(r"[a-z0-9]+(?:\.[a-z0-9]+)*")
_STOPWORDS = frozenset(
    {"a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "in", "is",
     "it", "of", "on", "or", "that", "the", "this", "to", "was", "with"}
)


def tokenize(text: str) -> list[str]:
    return [token for token in _TOKEN_PATTERN.findall(text.lower()) if token not in _STOPWORDS]


class Embedder(ABC):
    """Embedder interface shared by ingestion and query-time search."""

    model_name: str = "unknown"

    @abstractmethod
    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed many documents."""

    @abstractmethod
    async def embed_query(self, text: str) -> list[float]:
        """Embed one query."""

    async def aclose(self) -> None:
        return None


class HashingEmbedder(Embedder):
    """Deterministic signed feature-hashing embedding without model calls.

    Used for local development and tests. The wide default dimension keeps
    token collisions rare enough that cosine scores track term overlap.
    """

    def __init__(self, dimension: int = 4096) -> None:
        self.dimension = dimension
        self.model_name = f"hashing-{dimension}"

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    async def embed_query(self, text: str) -> list[float]:
        return self._embed(text)

    def _embed(self, text: str) -> list[float]:
        vector = [0.0 for _ in range(self.dimension)]
        tokens = tokenize(text)
        if not tokens:
            return vector

        for token in tokens:
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimension
            sign = -1.0 if digest[4] % 2 else 1.0
            vector[idx] += sign

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]


class HttpEmbedder(Embedder):
    """Embeds text through a model-serving backend (`/api/embeddings`)."""

    def __init__(
        self,
        base_url: str,
        model: str,
        *,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model_name = model
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [await self._embed(text) for text in texts]

    async def embed_query(self, text: str) -> list[float]:
        return await self._embed(text)

    async def _embed(self, text: str) -> list[float]:
        try:
            response = await self._client.post(
                "/api/embeddings", json={"model": self.model_name, "prompt": text}
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Embedding backend request failed: %s", exc)
            raise StoreUnreachableError(f"embedding backend unreachable: {exc}") from exc
        embedding = response.json().get("embedding")
        if not isinstance(embedding, list) or not embedding:
            raise StoreUnreachableError("embedding backend returned no vector")
        return [float(value) for value in embedding]

    async def aclose(self) -> None:
        await self._client.aclose()
