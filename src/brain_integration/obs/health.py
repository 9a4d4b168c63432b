"""Per-component health state machine and deterministic aggregation."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from brain_integration.types import utcnow

logger = logging.getLogger(__name__)


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNREACHABLE = "unreachable"


class OverallHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(slots=True)
class ProbeResult:
    state: HealthState
    message: str | None = None


Probe = Callable[[], Awaitable[ProbeResult]]


class ComponentHealth(BaseModel):
    name: str
    state: HealthState
    required: bool
    message: str | None = None
    latency_ms: float | None = None
    last_change: datetime | None = None
    consecutive_failures: int = 0


class HealthReport(BaseModel):
    overall: OverallHealth
    issues: list[str] = Field(default_factory=list)
    components: list[ComponentHealth] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=utcnow)


class HealthMonitor:
    """Tracks one state per component; transitions only on probe outcomes.

    - probe reports healthy → HEALTHY
    - probe reports degraded → DEGRADED
    - probe reports unreachable, raises, or times out → UNREACHABLE

    Aggregation: an unreachable required component makes the system
    UNHEALTHY; an unreachable optional component or any degraded component
    makes it DEGRADED.
    """

    def __init__(self, *, probe_timeout_seconds: float = 10.0) -> None:
        self.probe_timeout_seconds = probe_timeout_seconds
        self._components: dict[str, ComponentHealth] = {}
        self._probes: dict[str, Probe] = {}

    def register(
        self,
        name: str,
        *,
        required: bool,
        probe: Probe | None = None,
        initial: HealthState = HealthState.HEALTHY,
    ) -> None:
        self._components[name] = ComponentHealth(
            name=name, state=initial, required=required, last_change=utcnow()
        )
        if probe is not None:
            self._probes[name] = probe

    def unregister(self, name: str) -> None:
        self._components.pop(name, None)
        self._probes.pop(name, None)

    def record(
        self,
        name: str,
        state: HealthState,
        message: str | None = None,
        latency_ms: float | None = None,
    ) -> None:
        component = self._components[name]
        if component.state != state:
            logger.info("Component %s: %s -> %s", name, component.state.value, state.value)
            component.last_change = utcnow()
        component.state = state
        component.message = message
        component.latency_ms = latency_ms
        if state is HealthState.UNREACHABLE:
            component.consecutive_failures += 1
        else:
            component.consecutive_failures = 0

    def state(self, name: str) -> HealthState:
        return self._components[name].state

    async def run_probes(self) -> HealthReport:
        names = list(self._probes)
        await asyncio.gather(*(self._run_probe(name) for name in names))
        return self.report()

    def report(self) -> HealthReport:
        overall = OverallHealth.HEALTHY
        issues: list[str] = []
        for component in self._components.values():
            if component.state is HealthState.HEALTHY:
                continue
            detail = f"{component.name}: {component.state.value}"
            if component.message:
                detail += f" ({component.message})"
            issues.append(detail)
            if component.state is HealthState.UNREACHABLE and component.required:
                overall = OverallHealth.UNHEALTHY
            elif overall is OverallHealth.HEALTHY:
                overall = OverallHealth.DEGRADED
        return HealthReport(
            overall=overall,
            issues=issues,
            components=[component.model_copy() for component in self._components.values()],
        )

    async def _run_probe(self, name: str) -> None:
        start = time.perf_counter()
        try:
            outcome = await asyncio.wait_for(
                self._probes[name](), timeout=self.probe_timeout_seconds
            )
        except asyncio.TimeoutError:
            outcome = ProbeResult(HealthState.UNREACHABLE, "probe timed out")
        except Exception as exc:
            outcome = ProbeResult(HealthState.UNREACHABLE, str(exc) or type(exc).__name__)
        latency_ms = (time.perf_counter() - start) * 1000.0
        if name in self._components:
            self.record(name, outcome.state, outcome.message, latency_ms)
