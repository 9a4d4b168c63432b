import asyncio

import pytest

from brain_integration.obs.health import HealthMonitor, HealthState, OverallHealth, ProbeResult


def _probe(state: HealthState, message: str | None = None):
    async def probe() -> ProbeResult:
        return ProbeResult(state, message)

    return probe


@pytest.mark.asyncio
async def test_all_healthy_components_aggregate_to_healthy() -> None:
    monitor = HealthMonitor()
    monitor.register("vector_store", required=True, probe=_probe(HealthState.HEALTHY))
    monitor.register("knowledge_base", required=True)

    report = await monitor.run_probes()

    assert report.overall is OverallHealth.HEALTHY
    assert report.issues == []


@pytest.mark.asyncio
async def test_unreachable_required_component_is_unhealthy() -> None:
    monitor = HealthMonitor()
    monitor.register("vector_store", required=True, probe=_probe(HealthState.UNREACHABLE, "refused"))
    monitor.register("remote_llm", required=False, probe=_probe(HealthState.UNREACHABLE))

    report = await monitor.run_probes()

    assert report.overall is OverallHealth.UNHEALTHY
    assert "vector_store: unreachable (refused)" in report.issues
    assert monitor.state("vector_store") is HealthState.UNREACHABLE


@pytest.mark.asyncio
async def test_optional_or_degraded_components_degrade_the_system() -> None:
    monitor = HealthMonitor()
    monitor.register("vector_store", required=True, probe=_probe(HealthState.HEALTHY))
    monitor.register("local_llm", required=False, probe=_probe(HealthState.UNREACHABLE))

    assert (await monitor.run_probes()).overall is OverallHealth.DEGRADED

    monitor.register("local_llm", required=True, probe=_probe(HealthState.DEGRADED, "model missing"))
    assert (await monitor.run_probes()).overall is OverallHealth.DEGRADED


@pytest.mark.asyncio
async def test_probe_exceptions_and_timeouts_mark_unreachable() -> None:
    async def crash() -> ProbeResult:
        raise ConnectionError("reset by peer")

    async def hang() -> ProbeResult:
        await asyncio.sleep(1.0)
        return ProbeResult(HealthState.HEALTHY)

    monitor = HealthMonitor(probe_timeout_seconds=0.05)
    monitor.register("crashy", required=False, probe=crash)
    monitor.register("slow", required=False, probe=hang)

    report = await monitor.run_probes()
    by_name = {component.name: component for component in report.components}

    assert by_name["crashy"].state is HealthState.UNREACHABLE
    assert by_name["crashy"].message == "reset by peer"
    assert by_name["slow"].message == "probe timed out"
    assert by_name["slow"].consecutive_failures == 1
    assert report.overall is OverallHealth.DEGRADED


@pytest.mark.asyncio
async def test_recovery_resets_failure_count() -> None:
    monitor = HealthMonitor()
    monitor.register("local_llm", required=True)
    monitor.record("local_llm", HealthState.UNREACHABLE, "down")
    monitor.record("local_llm", HealthState.UNREACHABLE, "down")

    assert monitor.report().components[0].consecutive_failures == 2

    monitor.record("local_llm", HealthState.HEALTHY)
    assert monitor.report().overall is OverallHealth.HEALTHY
    assert monitor.report().components[0].consecutive_failures == 0
