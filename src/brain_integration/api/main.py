"""FastAPI entrypoint: knowledge, analysis, maintenance and the real-time socket."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any

from fastapi import Depends, FastAPI, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from brain_integration import __version__
from brain_integration.config import BrainSettings
from brain_integration.engines import EngineRegistry
from brain_integration.errors import (
    BrainError,
    CapacityError,
    InferenceConfigError,
    InferenceError,
    InitializationError,
    InvalidDocumentError,
    InvalidRequestError,
    StoreUnreachableError,
)
from brain_integration.obs.health import OverallHealth
from brain_integration.orchestrator import BrainOrchestrator
from brain_integration.types import AnalysisType, Document, utcnow

_STATUS_BY_ERROR: list[tuple[type[BrainError], int]] = [
    (CapacityError, 429),
    (InvalidDocumentError, 400),
    (InvalidRequestError, 400),
    (InferenceConfigError, 400),
    (InferenceError, 503),
    (StoreUnreachableError, 503),
    (InitializationError, 503),
]


class KnowledgeRequest(BaseModel):
    id: str = Field(min_length=1)
    text: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    k: int | None = Field(default=None, ge=1, le=100)
    threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    metadata_filter: dict[str, Any] | None = None


class AnalysisRequestBody(BaseModel):
    financial_data: dict[str, Any]
    analysis_type: AnalysisType = AnalysisType.GENERAL
    options: dict[str, Any] = Field(default_factory=dict)


class ScrapedDataRequest(BaseModel):
    records: list[Any]
    source: str = Field(min_length=1)


class ExpireRequest(BaseModel):
    older_than_days: float = Field(gt=0.0)
    metadata_filter: dict[str, Any] | None = None


def status_for(error: BrainError) -> int:
    for error_cls, status in _STATUS_BY_ERROR:
        if isinstance(error, error_cls):
            return status
    return 500


def get_orchestrator(request: Request) -> BrainOrchestrator:
    return request.app.state.orchestrator


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    orchestrator: BrainOrchestrator = app.state.orchestrator
    await orchestrator.initialize()
    try:
        yield
    finally:
        await orchestrator.shutdown()


def create_app(
    settings: BrainSettings | None = None,
    *,
    orchestrator: BrainOrchestrator | None = None,
    engines: EngineRegistry | None = None,
) -> FastAPI:
    """Build the app around one orchestrator, started and stopped by the lifespan."""
    app = FastAPI(title="Brain Integration", version=__version__, lifespan=_lifespan)
    app.state.orchestrator = orchestrator or BrainOrchestrator(settings, engines=engines)

    @app.exception_handler(BrainError)
    async def brain_error_handler(request: Request, exc: BrainError) -> JSONResponse:
        return JSONResponse(
            status_code=status_for(exc),
            content={"detail": exc.message, "code": exc.code},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"detail": jsonable_errors(exc), "code": InvalidRequestError.code},
        )

    @app.get("/health")
    async def health(brain: BrainOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
        report = await brain.health_check()
        status = 503 if report.overall is OverallHealth.UNHEALTHY else 200
        return JSONResponse(status_code=status, content=report.model_dump(mode="json"))

    @app.get("/stats")
    async def stats(brain: BrainOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
        return await brain.get_system_stats()

    @app.post("/knowledge")
    async def add_knowledge(
        body: KnowledgeRequest, brain: BrainOrchestrator = Depends(get_orchestrator)
    ) -> dict[str, Any]:
        doc = Document(
            id=body.id,
            text=body.text,
            metadata=dict(body.metadata),
            created_at=body.created_at or utcnow(),
        )
        stored = await brain.add_knowledge(doc)
        return {"id": stored.id, "versions": len(brain.knowledge_base.history(stored.id))}

    @app.post("/knowledge/search")
    async def search_knowledge(
        body: SearchRequest, brain: BrainOrchestrator = Depends(get_orchestrator)
    ) -> dict[str, Any]:
        result = await brain.search_knowledge(
            body.query, k=body.k, threshold=body.threshold, metadata_filter=body.metadata_filter
        )
        return result.to_dict()

    @app.post("/analysis")
    async def analysis(
        body: AnalysisRequestBody, brain: BrainOrchestrator = Depends(get_orchestrator)
    ) -> dict[str, Any]:
        result = await brain.perform_intelligent_analysis(
            body.financial_data, body.analysis_type, body.options
        )
        return result.to_dict()

    @app.post("/scraped")
    async def scraped(
        body: ScrapedDataRequest, brain: BrainOrchestrator = Depends(get_orchestrator)
    ) -> dict[str, Any]:
        ingested = await brain.process_scraped_data(body.records, body.source)
        return {"source": body.source, "received": len(body.records), "ingested": ingested}

    @app.post("/maintenance/expire")
    async def expire(
        body: ExpireRequest, brain: BrainOrchestrator = Depends(get_orchestrator)
    ) -> dict[str, Any]:
        removed = await brain.expire_knowledge(
            timedelta(days=body.older_than_days), body.metadata_filter
        )
        return {"removed": removed}

    @app.get("/traces")
    async def traces(
        limit: int = 20, brain: BrainOrchestrator = Depends(get_orchestrator)
    ) -> dict[str, Any]:
        return {"items": [asdict(record) for record in brain.traces.list_recent(limit=limit)]}

    @app.websocket("/ws")
    async def realtime(websocket: WebSocket) -> None:
        brain: BrainOrchestrator = websocket.app.state.orchestrator
        if brain.protocol is None:
            await websocket.close(code=1008, reason="protocol server disabled")
            return
        await brain.protocol.serve(websocket)

    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", ""), "type": error.get("type")}
        for error in exc.errors()
    ]
