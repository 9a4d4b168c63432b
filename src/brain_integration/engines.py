"""Registry for the external analysis engines (DCF, LBO, comparables, ...)."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Mapping
from typing import Any, Protocol

from brain_integration.types import AnalysisType

logger = logging.getLogger(__name__)


class AnalysisEngine(Protocol):
    """An opaque engine; `perform_analysis` may be sync or async."""

    def perform_analysis(self, financial_data: Mapping[str, Any]) -> Any:
        """Return the engine's result object."""


class EngineRegistry:
    """Maps analysis types to engines. Types without an engine get RAG output only."""

    def __init__(self) -> None:
        self._engines: dict[AnalysisType, AnalysisEngine] = {}

    def register(self, analysis_type: AnalysisType | str, engine: AnalysisEngine) -> None:
        key = AnalysisType(analysis_type)
        if key in self._engines:
            raise ValueError(f"Engine already registered: {key.value}")
        self._engines[key] = engine

    def get(self, analysis_type: AnalysisType | str) -> AnalysisEngine | None:
        return self._engines.get(AnalysisType(analysis_type))

    def registered(self) -> list[str]:
        return [key.value for key in self._engines]

    async def run(self, analysis_type: AnalysisType, financial_data: Mapping[str, Any]) -> Any:
        engine = self.get(analysis_type)
        if engine is None:
            return None
        method = engine.perform_analysis
        if inspect.iscoroutinefunction(method):
            return await method(financial_data)
        result = await asyncio.to_thread(method, financial_data)
        if inspect.isawaitable(result):
            result = await result
        return result
