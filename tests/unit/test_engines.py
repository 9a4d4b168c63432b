import threading

import pytest

from brain_integration.engines import EngineRegistry
from brain_integration.types import AnalysisType


class _SyncDcfEngine:
    def __init__(self) -> None:
        self.thread_name: str | None = None

    def perform_analysis(self, financial_data):
        self.thread_name = threading.current_thread().name
        return {"enterprise_value": financial_data["freeCashFlow"] * 12}


class _AsyncLboEngine:
    async def perform_analysis(self, financial_data):
        return {"irr": 0.25}


@pytest.mark.asyncio
async def test_sync_engines_run_off_the_event_loop_thread() -> None:
    registry = EngineRegistry()
    engine = _SyncDcfEngine()
    registry.register("dcf", engine)

    result = await registry.run(AnalysisType.DCF, {"freeCashFlow": 10})

    assert result == {"enterprise_value": 120}
    assert engine.thread_name != threading.current_thread().name


@pytest.mark.asyncio
async def test_async_engines_and_missing_types() -> None:
    registry = EngineRegistry()
    registry.register(AnalysisType.LBO, _AsyncLboEngine())

    assert await registry.run(AnalysisType.LBO, {}) == {"irr": 0.25}
    assert await registry.run(AnalysisType.COMPARABLE, {}) is None
    assert registry.registered() == ["lbo"]


def test_duplicate_engine_registration_rejected() -> None:
    registry = EngineRegistry()
    registry.register("dcf", _SyncDcfEngine())

    with pytest.raises(ValueError):
        registry.register("dcf", _SyncDcfEngine())
