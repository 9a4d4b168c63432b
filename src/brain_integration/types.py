"""Shared domain models."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any

MetadataValue = str | int | float | date


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


@dataclass(slots=True)
class Document:
    """A knowledge-base document. `embedding` is derived at ingestion."""

    id: str
    text: str
    metadata: dict[str, MetadataValue] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    embedding: list[float] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        self.created_at = as_utc(self.created_at)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Document":
        created_at = payload.get("created_at")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
        elif created_at is not None and not isinstance(created_at, datetime):
            raise ValueError(f"created_at must be an ISO timestamp, got {created_at!r}")
        return cls(
            id=str(payload.get("id", "")),
            text=str(payload.get("text", "")),
            metadata=dict(payload.get("metadata") or {}),
            created_at=created_at or utcnow(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "metadata": {key: _jsonable(value) for key, value in self.metadata.items()},
            "created_at": self.created_at.isoformat(),
        }


@dataclass(slots=True)
class DocumentVersion:
    """One ingested revision of a document id."""

    version: int
    created_at: datetime
    text_length: int
    metadata: dict[str, MetadataValue]


@dataclass(slots=True)
class RetrievalResult:
    """Ranked documents with parallel similarity scores."""

    documents: list[Document] = field(default_factory=list)
    scores: list[float] = field(default_factory=list)

    @property
    def avg_similarity(self) -> float:
        if not self.scores:
            return 0.0
        return sum(self.scores) / len(self.scores)

    @property
    def ids(self) -> list[str]:
        return [doc.id for doc in self.documents]

    def __len__(self) -> int:
        return len(self.documents)

    def to_dict(self) -> dict[str, Any]:
        return {
            "documents": [
                {**doc.to_dict(), "score": score}
                for doc, score in zip(self.documents, self.scores, strict=True)
            ],
            "avg_similarity": self.avg_similarity,
        }


class AnalysisType(str, Enum):
    DCF = "dcf"
    LBO = "lbo"
    COMPARABLE = "comparable"
    GENERAL = "general"


@dataclass(frozen=True, slots=True)
class AnalysisRequest:
    """An analysis submission; the payload is frozen into a read-only view."""

    payload: Mapping[str, Any]
    analysis_type: AnalysisType = AnalysisType.GENERAL
    context: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))
        if self.context is not None:
            object.__setattr__(self, "context", MappingProxyType(dict(self.context)))
        object.__setattr__(self, "analysis_type", AnalysisType(self.analysis_type))


@dataclass(slots=True)
class RagAnswer:
    """Generated answer plus the context it was conditioned on."""

    text: str
    context: RetrievalResult
    backend: str
    context_free: bool
    cached: bool = False


@dataclass(slots=True)
class AnalysisResult:
    """Merged output of an analysis engine and the RAG narrative."""

    analysis_type: AnalysisType
    narrative: str
    engine_result: Any
    context_documents: list[dict[str, Any]]
    context_free: bool
    backend: str
    cached: bool
    latency_ms: float
    engine_error: str | None = None
    generated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "analysis_type": self.analysis_type.value,
            "narrative": self.narrative,
            "engine_result": self.engine_result,
            "engine_error": self.engine_error,
            "context_documents": self.context_documents,
            "context_free": self.context_free,
            "backend": self.backend,
            "cached": self.cached,
            "latency_ms": self.latency_ms,
            "generated_at": self.generated_at.isoformat(),
        }
