"""Vector store interfaces and concrete adapters."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from math import sqrt
from typing import Any, Protocol

import httpx

from brain_integration.errors import InvalidDocumentError, StoreUnreachableError
from brain_integration.ingest.embedder import Embedder
from brain_integration.types import Document, RetrievalResult, utcnow

logger = logging.getLogger(__name__)

_HEADER_KEYS = ("company", "type")


class VectorStore(Protocol):
    """Contract for the embedding index used by the knowledge base."""

    async def add(self, doc: Document) -> Document:
        """Embed and upsert one document by id."""

    async def search(
        self,
        query: str,
        k: int,
        threshold: float,
        metadata_filter: dict[str, Any] | None = None,
    ) -> RetrievalResult:
        """Return up to `k` documents scoring at least `threshold`."""

    async def delete(self, ids: list[str]) -> int:
        """Remove documents by id and return how many existed."""

    async def stats(self) -> dict[str, Any]:
        """Return document count, embedding model and last update time."""

    async def aclose(self) -> None:
        """Release backend resources."""


def embedding_text(doc: Document) -> str:
    """Text that gets embedded: metadata header followed by the body."""
    header = " ".join(
        str(doc.metadata[key]) for key in _HEADER_KEYS if doc.metadata.get(key)
    )
    return f"{header}\n{doc.text}" if header else doc.text


def validate_document(doc: Document) -> None:
    if not doc.id or not doc.id.strip():
        raise InvalidDocumentError("document id must not be empty")
    if not doc.text or not doc.text.strip():
        raise InvalidDocumentError(f"document {doc.id!r} has empty text")


def rank_results(
    scored: list[tuple[Document, float]], k: int, threshold: float
) -> RetrievalResult:
    """Filter by threshold, order by score then recency, truncate to `k`."""
    kept = [(doc, score) for doc, score in scored if score >= threshold]
    kept.sort(key=lambda item: (item[1], item[0].created_at.timestamp()), reverse=True)
    kept = kept[: max(0, k)]
    return RetrievalResult(
        documents=[doc for doc, _ in kept],
        scores=[score for _, score in kept],
    )


@dataclass(slots=True)
class _StoredVector:
    document: Document
    embedding: list[float]


class InMemoryVectorStore:
    """In-process embedding index used for tests and single-node deployments."""

    def __init__(self, embedder: Embedder) -> None:
        self.embedder = embedder
        self._store: dict[str, _StoredVector] = {}
        self._last_updated: datetime | None = None

    async def add(self, doc: Document) -> Document:
        validate_document(doc)
        [embedding] = await self.embedder.embed_documents([embedding_text(doc)])
        stored = replace(doc, metadata=dict(doc.metadata), embedding=embedding)
        self._store[doc.id] = _StoredVector(document=stored, embedding=embedding)
        self._last_updated = utcnow()
        return stored

    async def search(
        self,
        query: str,
        k: int,
        threshold: float,
        metadata_filter: dict[str, Any] | None = None,
    ) -> RetrievalResult:
        query_embedding = await self.embedder.embed_query(query)
        scored = [
            (record.document, _cosine_similarity(query_embedding, record.embedding))
            for record in list(self._store.values())
            if metadata_match(record.document.metadata, metadata_filter)
        ]
        return rank_results(scored, k, threshold)

    async def delete(self, ids: list[str]) -> int:
        removed = 0
        for doc_id in ids:
            if self._store.pop(doc_id, None) is not None:
                removed += 1
        if removed:
            self._last_updated = utcnow()
        return removed

    async def get(self, doc_id: str) -> Document | None:
        record = self._store.get(doc_id)
        return record.document if record else None

    async def stats(self) -> dict[str, Any]:
        return {
            "backend": "memory",
            "document_count": len(self._store),
            "embedding_model": self.embedder.model_name,
            "last_updated": self._last_updated.isoformat() if self._last_updated else None,
        }

    async def aclose(self) -> None:
        await self.embedder.aclose()


class HttpVectorStore:
    """Adapter for an external vector backend reached over HTTP.

    Embeddings are computed client-side with the same `Embedder` for both
    documents and queries; the backend only stores and ranks vectors.
    Threshold filtering and recency tie-breaks are applied here so the
    retrieval contract matches `InMemoryVectorStore`.
    """

    def __init__(
        self,
        base_url: str,
        embedder: Embedder,
        *,
        collection: str = "financial_knowledge",
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.embedder = embedder
        self.collection = collection
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )
        self._last_updated: datetime | None = None

    async def add(self, doc: Document) -> Document:
        validate_document(doc)
        [embedding] = await self.embedder.embed_documents([embedding_text(doc)])
        stored = replace(doc, metadata=dict(doc.metadata), embedding=embedding)
        payload = {**stored.to_dict(), "embedding": embedding, "collection": self.collection}
        await self._request("POST", "/documents", json=payload)
        self._last_updated = utcnow()
        return stored

    async def search(
        self,
        query: str,
        k: int,
        threshold: float,
        metadata_filter: dict[str, Any] | None = None,
    ) -> RetrievalResult:
        query_embedding = await self.embedder.embed_query(query)
        response = await self._request(
            "POST",
            "/query",
            json={
                "collection": self.collection,
                "query_embedding": query_embedding,
                "k": k,
                "filter": metadata_filter or {},
            },
        )
        scored: list[tuple[Document, float]] = []
        for item in response.json().get("results", []):
            doc = Document.from_dict(item)
            score = min(1.0, max(0.0, float(item.get("score", 0.0))))
            scored.append((doc, score))
        return rank_results(scored, k, threshold)

    async def delete(self, ids: list[str]) -> int:
        removed = 0
        for doc_id in ids:
            response = await self._request(
                "DELETE", f"/documents/{doc_id}", allow_not_found=True
            )
            if response.status_code != 404:
                removed += 1
        if removed:
            self._last_updated = utcnow()
        return removed

    async def stats(self) -> dict[str, Any]:
        response = await self._request("GET", "/stats", params={"collection": self.collection})
        payload = response.json()
        return {
            "backend": "http",
            "document_count": int(payload.get("document_count", 0)),
            "embedding_model": self.embedder.model_name,
            "last_updated": self._last_updated.isoformat() if self._last_updated else None,
        }

    async def aclose(self) -> None:
        await self._client.aclose()
        await self.embedder.aclose()

    async def _request(
        self, method: str, path: str, *, allow_not_found: bool = False, **kwargs: Any
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("Vector backend %s %s failed: %s", method, path, exc)
            raise StoreUnreachableError(f"vector backend unreachable: {exc}") from exc

        if allow_not_found and response.status_code == 404:
            return response
        if response.status_code >= 500:
            raise StoreUnreachableError(
                f"vector backend error {response.status_code} on {method} {path}"
            )
        if response.status_code >= 400:
            raise InvalidDocumentError(
                f"vector backend rejected {method} {path}: {response.text[:200]}"
            )
        return response


def metadata_match(
    metadata: dict[str, Any], metadata_filter: dict[str, Any] | None
) -> bool:
    if not metadata_filter:
        return True
    for key, value in metadata_filter.items():
        if metadata.get(key) != value:
            return False
    return True


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return max(0.0, min(1.0, numerator / (norm_a * norm_b)))
