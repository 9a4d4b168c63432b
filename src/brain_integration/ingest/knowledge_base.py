"""Document lifecycle on top of the vector store: ingest, version, expire."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from brain_integration.errors import StoreError
from brain_integration.retrieval.vector_store import VectorStore
from brain_integration.types import (
    Document,
    DocumentVersion,
    RetrievalResult,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

MetadataPredicate = Callable[[dict[str, Any]], bool]
IngestListener = Callable[[Document], None]
RemovalListener = Callable[[list[str]], None]


class RetrievalScope:
    """Searches issued inside `KnowledgeBaseManager.retrieval()`.

    Every document returned is pinned until the scope exits so that expiry
    cannot remove context an in-flight answer is still using.
    """

    def __init__(self, manager: "KnowledgeBaseManager") -> None:
        self._manager = manager
        self.pinned: list[str] = []

    async def search(
        self,
        query: str,
        k: int,
        threshold: float,
        metadata_filter: dict[str, Any] | None = None,
    ) -> RetrievalResult:
        result = await self._manager.search(query, k, threshold, metadata_filter)
        for doc_id in result.ids:
            self._manager._pins[doc_id] += 1
            self.pinned.append(doc_id)
        return result


class KnowledgeBaseManager:
    """Owns document version history and maintenance of the embedding index."""

    def __init__(
        self,
        store: VectorStore,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self._clock = clock
        self._history: dict[str, list[DocumentVersion]] = {}
        self._pins: Counter[str] = Counter()
        self._ingest_listeners: list[IngestListener] = []
        self._removal_listeners: list[RemovalListener] = []
        self.ingested_total = 0
        self.failed_total = 0
        self.expired_total = 0

    def add_ingest_listener(self, listener: IngestListener) -> None:
        self._ingest_listeners.append(listener)

    def add_removal_listener(self, listener: RemovalListener) -> None:
        self._removal_listeners.append(listener)

    async def ingest(self, doc: Document) -> Document:
        """Upsert one document; re-ingesting an id records a new version."""
        stored = await self.store.add(doc)
        versions = self._history.setdefault(stored.id, [])
        versions.append(
            DocumentVersion(
                version=len(versions) + 1,
                created_at=as_utc(stored.created_at),
                text_length=len(stored.text),
                metadata=dict(stored.metadata),
            )
        )
        self.ingested_total += 1
        logger.debug("Ingested %s (version %d)", stored.id, len(versions))
        for listener in self._ingest_listeners:
            listener(stored)
        return stored

    async def ingest_batch(self, docs: Iterable[Document], source: str) -> int:
        """Ingest documents independently and return how many succeeded."""
        succeeded = 0
        for doc in docs:
            if "source" not in doc.metadata:
                doc = replace(doc, metadata={**doc.metadata, "source": source})
            try:
                await self.ingest(doc)
            except StoreError as exc:
                self.failed_total += 1
                logger.warning("Batch %s: failed to ingest %r: %s", source, doc.id, exc)
                continue
            succeeded += 1
        logger.info("Batch %s: ingested %d document(s)", source, succeeded)
        return succeeded

    async def search(
        self,
        query: str,
        k: int,
        threshold: float,
        metadata_filter: dict[str, Any] | None = None,
    ) -> RetrievalResult:
        return await self.store.search(query, k, threshold, metadata_filter)

    @asynccontextmanager
    async def retrieval(self) -> AsyncIterator[RetrievalScope]:
        scope = RetrievalScope(self)
        try:
            yield scope
        finally:
            for doc_id in scope.pinned:
                self._pins[doc_id] -= 1
                if self._pins[doc_id] <= 0:
                    del self._pins[doc_id]

    async def expire(
        self,
        older_than: timedelta,
        predicate: MetadataPredicate | None = None,
    ) -> int:
        """Remove documents older than `older_than` whose metadata matches.

        Documents pinned by an in-flight retrieval are skipped and become
        eligible again on the next maintenance run.
        """
        cutoff = as_utc(self._clock()) - older_than
        candidates: list[str] = []
        deferred: list[str] = []
        for doc_id, versions in self._history.items():
            latest = versions[-1]
            if latest.created_at >= cutoff:
                continue
            if predicate is not None and not predicate(latest.metadata):
                continue
            if self._pins.get(doc_id):
                deferred.append(doc_id)
                continue
            candidates.append(doc_id)

        if deferred:
            logger.info("Expiry deferred for %d pinned document(s)", len(deferred))
        if not candidates:
            return 0

        removed = await self.store.delete(candidates)
        for doc_id in candidates:
            self._history.pop(doc_id, None)
        self.expired_total += removed
        for listener in self._removal_listeners:
            listener(candidates)
        logger.info("Expired %d document(s) older than %s", removed, older_than)
        return removed

    def history(self, doc_id: str) -> list[DocumentVersion]:
        return list(self._history.get(doc_id, []))

    def is_pinned(self, doc_id: str) -> bool:
        return bool(self._pins.get(doc_id))

    def stats(self) -> dict[str, Any]:
        return {
            "tracked_documents": len(self._history),
            "total_versions": sum(len(versions) for versions in self._history.values()),
            "ingested_total": self.ingested_total,
            "failed_total": self.failed_total,
            "expired_total": self.expired_total,
            "pinned_documents": len(self._pins),
        }
