"""TTL answer cache with metadata-scoped invalidation.

An entry remembers which documents (and which values of the invalidation
keys, e.g. `company`) shaped its answer. Ingesting a document evicts the
entries it could have changed:

- entries that used a document with the same id;
- entries that used a document sharing an invalidation-key value;
- entries whose metadata filter matches the new document;
- entries that retrieved fewer documents than they asked for, since the new
  document may now clear the similarity threshold.
"""

from __future__ import annotations

import hashlib
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from brain_integration.retrieval.vector_store import metadata_match
from brain_integration.types import Document, RagAnswer


def make_cache_key(query: str, options_hash: str) -> str:
    normalized = " ".join(query.lower().split())
    return hashlib.sha256(f"{normalized}\x00{options_hash}".encode("utf-8")).hexdigest()


@dataclass(slots=True)
class CacheEntry:
    answer: RagAnswer
    created_at: float
    doc_ids: frozenset[str]
    scope: dict[str, frozenset[str]]
    metadata_filter: dict[str, Any] | None
    requested_docs: int
    retrieved_docs: int = field(init=False)

    def __post_init__(self) -> None:
        self.retrieved_docs = len(self.doc_ids)

    def is_expired(self, now: float, ttl_seconds: float) -> bool:
        return now - self.created_at > ttl_seconds


class AnswerCache:
    """In-memory LRU cache of generated answers keyed by (query, options hash)."""

    def __init__(
        self,
        *,
        ttl_seconds: float = 600.0,
        max_entries: int = 512,
        invalidation_keys: Iterable[str] = ("company",),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.invalidation_keys = tuple(invalidation_keys)
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.invalidations = 0
        # bumped on every invalidation
        self.generation = 0

    def get(self, key: str) -> RagAnswer | None:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if entry.is_expired(self._clock(), self.ttl_seconds):
            del self._entries[key]
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return entry.answer

    def put(
        self,
        key: str,
        answer: RagAnswer,
        *,
        requested_docs: int,
        metadata_filter: dict[str, Any] | None = None,
        generation: int | None = None,
    ) -> bool:
        """Store `answer`; skipped when an invalidation happened since `generation`."""
        if generation is not None and generation != self.generation:
            return False
        documents = answer.context.documents
        scope = {
            name: frozenset(
                str(doc.metadata[name]) for doc in documents if doc.metadata.get(name) is not None
            )
            for name in self.invalidation_keys
        }
        if key not in self._entries and len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
        self._entries[key] = CacheEntry(
            answer=answer,
            created_at=self._clock(),
            doc_ids=frozenset(doc.id for doc in documents),
            scope=scope,
            metadata_filter=dict(metadata_filter) if metadata_filter else None,
            requested_docs=requested_docs,
        )
        self._entries.move_to_end(key)
        return True

    def invalidate_for(self, doc: Document) -> int:
        """Evict entries the newly ingested `doc` could affect."""
        self.generation += 1
        stale = [key for key, entry in self._entries.items() if self._affected(entry, doc)]
        return self._evict(stale)

    def invalidate_ids(self, doc_ids: Iterable[str]) -> int:
        self.generation += 1
        removed = set(doc_ids)
        stale = [key for key, entry in self._entries.items() if entry.doc_ids & removed]
        return self._evict(stale)

    def clear(self) -> None:
        self.generation += 1
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, Any]:
        total = self.hits + self.misses
        return {
            "size": len(self._entries),
            "max_entries": self.max_entries,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
            "invalidations": self.invalidations,
        }

    def _affected(self, entry: CacheEntry, doc: Document) -> bool:
        if doc.id in entry.doc_ids:
            return True
        if entry.retrieved_docs < entry.requested_docs:
            return True
        if entry.metadata_filter and metadata_match(doc.metadata, entry.metadata_filter):
            return True
        for name, values in entry.scope.items():
            value = doc.metadata.get(name)
            if value is not None and str(value) in values:
                return True
        return False

    def _evict(self, keys: list[str]) -> int:
        for key in keys:
            del self._entries[key]
        self.invalidations += len(keys)
        return len(keys)
