"""Analysis traces, latency summaries and a small timing helper."""

from __future__ import annotations

import re
import time
import uuid
from collections import deque
from dataclasses import dataclass

from brain_integration.types import utcnow

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)


@dataclass(slots=True)
class AnalysisTrace:
    trace_id: str
    timestamp_utc: str
    analysis_type: str
    backend: str
    context_documents: int
    context_free: bool
    cached: bool
    prompt_tokens: int
    output_tokens: int
    latency_ms: float
    succeeded: bool
    error_code: str | None = None


class AnalysisTraceStore:
    """Bounded in-memory record of analysis runs for statistics."""

    def __init__(self, max_records: int = 1000) -> None:
        self._records: deque[AnalysisTrace] = deque(maxlen=max_records)

    def record(
        self,
        *,
        analysis_type: str,
        backend: str,
        context_documents: int,
        context_free: bool,
        cached: bool,
        prompt_text: str,
        output_text: str,
        latency_ms: float,
        error_code: str | None = None,
    ) -> AnalysisTrace:
        trace = AnalysisTrace(
            trace_id=str(uuid.uuid4()),
            timestamp_utc=utcnow().isoformat(),
            analysis_type=analysis_type,
            backend=backend,
            context_documents=context_documents,
            context_free=context_free,
            cached=cached,
            prompt_tokens=estimate_token_count(prompt_text),
            output_tokens=estimate_token_count(output_text),
            latency_ms=latency_ms,
            succeeded=error_code is None,
            error_code=error_code,
        )
        self._records.append(trace)
        return trace

    def list_recent(self, limit: int = 20) -> list[AnalysisTrace]:
        return list(self._records)[-limit:]

    def summary(self) -> dict[str, float | int]:
        records = list(self._records)
        total = len(records)
        if total == 0:
            return {
                "total_analyses": 0,
                "failed_analyses": 0,
                "context_free_analyses": 0,
                "cached_analyses": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        return {
            "total_analyses": total,
            "failed_analyses": sum(1 for record in records if not record.succeeded),
            "context_free_analyses": sum(1 for record in records if record.context_free),
            "cached_analyses": sum(1 for record in records if record.cached),
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
        }


class Timer:
    """Simple context timer."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))
