"""Admission caps and cancellation tokens for in-flight work."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from brain_integration.errors import CapacityError


class AdmissionGate:
    """Bounds concurrently in-flight operations of one kind.

    Acquisition never waits: once `limit` operations are running, further
    callers get `error_cls` immediately. A slot is released as soon as the
    holder's block exits, successfully or not.
    """

    def __init__(self, name: str, limit: int, error_cls: type[CapacityError]) -> None:
        if limit < 1:
            raise ValueError("admission limit must be >= 1")
        self.name = name
        self.limit = limit
        self.error_cls = error_cls
        self.in_flight = 0
        self.admitted_total = 0
        self.rejected_total = 0

    @contextmanager
    def admit(self) -> Iterator[None]:
        if self.in_flight >= self.limit:
            self.rejected_total += 1
            raise self.error_cls(f"{self.name}: {self.in_flight}/{self.limit} already in flight")
        self.in_flight += 1
        self.admitted_total += 1
        try:
            yield
        finally:
            self.in_flight -= 1

    @property
    def available(self) -> int:
        return self.limit - self.in_flight

    def stats(self) -> dict[str, int]:
        return {
            "limit": self.limit,
            "in_flight": self.in_flight,
            "admitted_total": self.admitted_total,
            "rejected_total": self.rejected_total,
        }


class CancellationToken:
    """Cooperative cancellation flag passed along retrieval → generation → send.

    Backend calls are not aborted; holders check the token before every
    externally visible side effect and drop the result when it is set.
    """

    __slots__ = ("_cancelled", "reason")

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class OperationCancelled(Exception):
    """Raised inside a pipeline when its cancellation token was set."""
