"""Top-level coordinator: owns every component and the public operations."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from datetime import timedelta
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from brain_integration.agent.rag_agent import RagAgent, RetrievalOptions
from brain_integration.concurrency import AdmissionGate, CancellationToken
from brain_integration.config import BrainSettings, GenerationConfig
from brain_integration.engines import EngineRegistry
from brain_integration.errors import (
    AnalysisLimitReachedError,
    BrainError,
    InferenceError,
    IngestionLimitReachedError,
    InitializationError,
    InvalidDocumentError,
    InvalidRequestError,
    StoreError,
)
from brain_integration.inference.local_client import LocalInferenceClient
from brain_integration.inference.remote import RemoteInferenceBackend, create_chat_model
from brain_integration.ingest.embedder import Embedder, HashingEmbedder, HttpEmbedder
from brain_integration.ingest.knowledge_base import KnowledgeBaseManager
from brain_integration.ingest.records import figure_lines, records_to_documents
from brain_integration.obs.health import (
    HealthMonitor,
    HealthReport,
    HealthState,
    OverallHealth,
    ProbeResult,
)
from brain_integration.obs.tracing import AnalysisTraceStore, Timer
from brain_integration.protocol import messages
from brain_integration.protocol.server import ProtocolServer
from brain_integration.retrieval.cache import AnswerCache
from brain_integration.retrieval.vector_store import (
    HttpVectorStore,
    InMemoryVectorStore,
    VectorStore,
    metadata_match,
)
from brain_integration.types import (
    AnalysisRequest,
    AnalysisResult,
    AnalysisType,
    Document,
    RetrievalResult,
)

logger = logging.getLogger(__name__)

_ANALYSIS_LABELS = {
    AnalysisType.DCF: "DCF (discounted cash flow) valuation",
    AnalysisType.LBO: "LBO (leveraged buyout) analysis",
    AnalysisType.COMPARABLE: "comparable company analysis",
    AnalysisType.GENERAL: "financial analysis",
}
_COMPANY_KEYS = ("company_name", "companyName", "company", "symbol", "ticker")
_ENGINE_SUMMARY_CHARS = 1500


class AnalysisOptions(BaseModel):
    """Per-analysis knobs. Unrecognized keys are kept as request context."""

    model_config = ConfigDict(extra="allow")

    question: str | None = None
    max_docs: int | None = Field(default=None, ge=1, le=100)
    similarity_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    context_window_chars: int | None = Field(default=None, ge=200)
    metadata_filter: dict[str, Any] | None = None
    generation: dict[str, Any] = Field(default_factory=dict)

    @property
    def context(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


def company_of(request: AnalysisRequest) -> str | None:
    for source in (request.context or {}, request.payload):
        for key in _COMPANY_KEYS:
            value = source.get(key)
            if value:
                return str(value).strip()
    return None


def build_analysis_query(request: AnalysisRequest, engine_result: Any = None) -> tuple[str, str]:
    """Return `(question, search_query)` for an analysis request.

    The search query is kept short so retrieval matches on the analysis kind
    and company; the question carries the figures and engine output.
    """
    label = _ANALYSIS_LABELS[request.analysis_type]
    company = company_of(request)
    subject = company or "the company"
    search_query = f"{label} {company}" if company else label

    lines = [f"Provide a {label} of {subject}."]
    figures = figure_lines(request.payload, exclude=_COMPANY_KEYS)
    if figures:
        lines.append("Key figures:")
        lines.extend(f"- {line}" for line in figures)
    if engine_result is not None:
        summary = json.dumps(engine_result, default=str, sort_keys=True)
        lines.append(f"Engine output: {summary[:_ENGINE_SUMMARY_CHARS]}")
    return "\n".join(lines), search_query


class BrainOrchestrator:
    """Owns the vector store, knowledge base, RAG agent, inference backends,
    protocol server and health monitor, and exposes the public operations.

    `initialize()` starts components leaf-first and `shutdown()` releases
    them in reverse. Collaborators such as stores, inference clients and
    HTTP transports can be injected; anything not injected is built from
    `BrainSettings`.
    """

    def __init__(
        self,
        settings: BrainSettings | None = None,
        *,
        engines: EngineRegistry | None = None,
        embedder: Embedder | None = None,
        vector_store: VectorStore | None = None,
        local_client: LocalInferenceClient | None = None,
        remote_backend: RemoteInferenceBackend | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or BrainSettings()
        self.engines = engines or EngineRegistry()
        self._embedder = embedder
        self._injected_store = vector_store
        self._injected_local = local_client
        self._injected_remote = remote_backend
        self._transport = transport
        self._clock = clock

        admission = self.settings.admission
        self.analysis_gate = AdmissionGate(
            "analyses", admission.max_concurrent_analyses, AnalysisLimitReachedError
        )
        self.scraping_gate = AdmissionGate(
            "scraped batches", admission.max_concurrent_scraping, IngestionLimitReachedError
        )
        self.health = HealthMonitor(
            probe_timeout_seconds=self.settings.inference.probe_timeout_seconds
        )
        self.traces = AnalysisTraceStore()

        self.store: VectorStore | None = None
        self.knowledge_base: KnowledgeBaseManager | None = None
        self.rag: RagAgent | None = None
        self.local: LocalInferenceClient | None = None
        self.remote: RemoteInferenceBackend | None = None
        self.protocol: ProtocolServer | None = None
        self.initialized = False
        self._started_at: float | None = None

    async def initialize(self) -> None:
        if self.initialized:
            return
        logger.info("Initializing brain integration")
        try:
            await self._start_store()
            self._start_knowledge_base()
            self._start_rag()
            await self._start_inference()
            await self._start_protocol()
        except BrainError as exc:
            logger.error("Initialization failed: %s", exc)
            await self._release()
            if isinstance(exc, InitializationError):
                raise
            raise InitializationError(str(exc)) from exc
        except Exception:
            await self._release()
            raise
        self.initialized = True
        self._started_at = self._clock()
        logger.info("Brain integration ready: %s", self.health.report().overall.value)

    async def shutdown(self) -> None:
        """Release components in reverse start order. Safe to call repeatedly."""
        if self.store is None and not self.initialized:
            return
        logger.info("Shutting down brain integration")
        await self._release()
        self.initialized = False

    async def add_knowledge(self, doc: Document | Mapping[str, Any]) -> Document:
        kb = self._ready().knowledge_base
        if not isinstance(doc, Document):
            try:
                doc = Document.from_dict(doc)
            except (TypeError, ValueError) as exc:
                raise InvalidDocumentError(f"invalid document: {exc}") from exc
        return await kb.ingest(doc)

    async def search_knowledge(
        self,
        query: str,
        k: int | None = None,
        threshold: float | None = None,
        metadata_filter: dict[str, Any] | None = None,
    ) -> RetrievalResult:
        self._ready()
        if not query or not query.strip():
            raise InvalidRequestError("query must not be empty")
        options = self._retrieval_options(
            max_docs=k, similarity_threshold=threshold, metadata_filter=metadata_filter
        )
        return await self.knowledge_base.search(
            query, options.max_docs, options.similarity_threshold, options.metadata_filter
        )

    async def perform_intelligent_analysis(
        self,
        financial_data: Mapping[str, Any],
        analysis_type: AnalysisType | str = AnalysisType.GENERAL,
        options: Mapping[str, Any] | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> AnalysisResult:
        """Run the engine for `analysis_type` and a RAG narrative, merged into one result.

        Admission is checked before anything else. An engine failure is
        reported in `engine_error`; the narrative is still produced.
        """
        self._ready()
        with self.analysis_gate.admit():
            try:
                parsed = AnalysisOptions.model_validate(dict(options or {}))
                request = AnalysisRequest(
                    payload=financial_data,
                    analysis_type=analysis_type,
                    context=parsed.context,
                )
            except (ValidationError, ValueError) as exc:
                raise InvalidRequestError(f"invalid analysis request: {exc}") from exc
            generation = GenerationConfig.build(
                **{**self.settings.generation.model_dump(), **parsed.generation}
            )
            retrieval = self._retrieval_options(
                max_docs=parsed.max_docs,
                similarity_threshold=parsed.similarity_threshold,
                context_window_chars=parsed.context_window_chars,
                metadata_filter=parsed.metadata_filter,
            )

            timer = Timer()
            question = ""
            try:
                with timer:
                    engine_result, engine_error = await self._run_engine(request)
                    question, search_query = build_analysis_query(request, engine_result)
                    if parsed.question:
                        question = f"{parsed.question.strip()}\n\n{question}"
                    answer = await self.rag.answer_with_context(
                        question,
                        retrieval,
                        generation=generation,
                        cancel=cancel,
                        search_query=search_query,
                    )
            except InferenceError as exc:
                self.traces.record(
                    analysis_type=request.analysis_type.value,
                    backend="none",
                    context_documents=0,
                    context_free=True,
                    cached=False,
                    prompt_text=question,
                    output_text="",
                    latency_ms=timer.elapsed_ms,
                    error_code=exc.code,
                )
                raise

        result = AnalysisResult(
            analysis_type=request.analysis_type,
            narrative=answer.text,
            engine_result=engine_result,
            engine_error=engine_error,
            context_documents=answer.context.to_dict()["documents"],
            context_free=answer.context_free,
            backend=answer.backend,
            cached=answer.cached,
            latency_ms=timer.elapsed_ms,
        )
        self.traces.record(
            analysis_type=request.analysis_type.value,
            backend=answer.backend,
            context_documents=len(answer.context),
            context_free=answer.context_free,
            cached=answer.cached,
            prompt_text=question,
            output_text=answer.text,
            latency_ms=timer.elapsed_ms,
        )
        logger.info(
            "%s analysis done in %.0fms via %s (%d context docs)",
            request.analysis_type.value,
            timer.elapsed_ms,
            answer.backend,
            len(answer.context),
        )
        return result

    async def process_scraped_data(self, records: Iterable[Any], source_label: str) -> int:
        """Normalize scraped company records and ingest them; returns the count stored."""
        kb = self._ready().knowledge_base
        if not source_label or not source_label.strip():
            raise InvalidRequestError("source label must not be empty")
        with self.scraping_gate.admit():
            documents = records_to_documents(records, source_label)
            return await kb.ingest_batch(documents, source_label)

    async def expire_knowledge(
        self,
        older_than: timedelta,
        metadata_filter: dict[str, Any] | None = None,
    ) -> int:
        kb = self._ready().knowledge_base
        if not metadata_filter:
            return await kb.expire(older_than)

        def matches(metadata: dict[str, Any]) -> bool:
            return metadata_match(metadata, metadata_filter)

        return await kb.expire(older_than, matches)

    async def health_check(self) -> HealthReport:
        if not self.initialized:
            return HealthReport(overall=OverallHealth.UNHEALTHY, issues=["not initialized"])
        return await self.health.run_probes()

    async def get_system_stats(self) -> dict[str, Any]:
        uptime = self._clock() - self._started_at if self._started_at is not None else 0.0
        stats: dict[str, Any] = {
            "brain_integration": {
                "initialized": self.initialized,
                "uptime_seconds": uptime,
                "components": {
                    "vector_store": self.store is not None,
                    "knowledge_base": self.knowledge_base is not None,
                    "rag_agent": self.rag is not None,
                    "local_llm": self.local is not None,
                    "remote_llm": self.remote is not None,
                    "protocol_server": self.protocol is not None,
                },
                "admission": {
                    "analyses": self.analysis_gate.stats(),
                    "scraping": self.scraping_gate.stats(),
                },
                "engines": self.engines.registered(),
            },
            "vector_store": None,
            "local_llm": self.local.stats() if self.local else None,
            "remote_llm": self.remote.stats() if self.remote else None,
            "knowledge_base": self.knowledge_base.stats() if self.knowledge_base else None,
            "rag": self.rag.stats() if self.rag else None,
            "protocol": self.protocol.stats() if self.protocol else {"enabled": False},
            "analysis": self.traces.summary(),
        }
        if self.store is not None:
            try:
                stats["vector_store"] = await self.store.stats()
            except StoreError as exc:
                stats["vector_store"] = {"error": exc.to_payload()}
        return stats

    async def handle_analysis_request(
        self, data: dict[str, Any], cancel: CancellationToken
    ) -> dict[str, Any]:
        request = messages.parse_data(messages.AnalysisRequestData, data)
        result = await self.perform_intelligent_analysis(
            request.financial_data, request.analysis_type, request.options, cancel=cancel
        )
        return result.to_dict()

    async def handle_context_request(
        self, data: dict[str, Any], cancel: CancellationToken
    ) -> dict[str, Any]:
        self._ready()
        request = messages.parse_data(messages.ContextRequestData, data)
        if not request.query.strip():
            raise InvalidRequestError("query must not be empty")
        options = self._retrieval_options(
            max_docs=request.max_docs,
            similarity_threshold=request.similarity_threshold,
            metadata_filter=request.metadata_filter,
        )
        async with self.knowledge_base.retrieval() as scope:
            result = await self.rag.build_context(request.query, options, scope=scope)
        return result.to_dict()

    def _ready(self) -> "BrainOrchestrator":
        if not self.initialized:
            raise InitializationError("brain integration is not initialized")
        return self

    def _retrieval_options(self, **overrides: Any) -> RetrievalOptions:
        try:
            return self.rag.default_options(**overrides)
        except ValidationError as exc:
            raise InvalidRequestError(f"invalid retrieval options: {exc}") from exc

    async def _run_engine(self, request: AnalysisRequest) -> tuple[Any, str | None]:
        if self.engines.get(request.analysis_type) is None:
            return None, None
        try:
            return await self.engines.run(request.analysis_type, request.payload), None
        except Exception as exc:
            logger.warning("%s engine failed: %s", request.analysis_type.value, exc)
            return None, f"{type(exc).__name__}: {exc}"

    async def _start_store(self) -> None:
        if self._injected_store is not None:
            self.store = self._injected_store
        else:
            embedder = self._embedder or self._build_embedder()
            config = self.settings.vector_store
            if config.backend == "http":
                self.store = HttpVectorStore(
                    config.url,
                    embedder,
                    collection=config.collection,
                    timeout_seconds=config.timeout_seconds,
                    transport=self._transport,
                )
            else:
                self.store = InMemoryVectorStore(embedder)
        try:
            await self.store.stats()
        except StoreError as exc:
            raise InitializationError(f"vector store unavailable: {exc}") from exc
        self.health.register("vector_store", required=True, probe=self._probe_store)
        logger.info("Vector store ready (%s)", type(self.store).__name__)

    def _build_embedder(self) -> Embedder:
        config = self.settings.embedding
        if config.backend == "http":
            return HttpEmbedder(
                config.base_url,
                config.model,
                timeout_seconds=config.timeout_seconds,
                transport=self._transport,
            )
        return HashingEmbedder(dimension=config.dimension)

    def _start_knowledge_base(self) -> None:
        self.knowledge_base = KnowledgeBaseManager(self.store)
        self.health.register("knowledge_base", required=True)

    def _start_rag(self) -> None:
        cache_config = self.settings.cache
        cache = None
        if cache_config.enabled:
            cache = AnswerCache(
                ttl_seconds=cache_config.ttl_seconds,
                max_entries=cache_config.max_entries,
                invalidation_keys=cache_config.invalidation_keys,
            )
        self.rag = RagAgent(
            self.knowledge_base,
            retrieval_config=self.settings.retrieval,
            default_generation=self.settings.generation,
            cache=cache,
        )
        self.health.register("rag_agent", required=True)

    async def _start_inference(self) -> None:
        self.local = self._injected_local or LocalInferenceClient(
            self.settings.inference,
            default_generation=self.settings.generation,
            transport=self._transport,
        )
        self.remote = self._injected_remote
        if self.remote is None:
            llm = create_chat_model(self.settings.fallback)
            if llm is not None:
                self.remote = RemoteInferenceBackend(
                    llm, timeout_seconds=self.settings.fallback.timeout_seconds
                )

        # a configured fallback makes the local backend recoverable
        local_required = self.remote is None
        self.health.register("local_llm", required=local_required, probe=self._probe_local)
        outcome = await self._probe_local()
        self.health.record("local_llm", outcome.state, outcome.message)
        if outcome.state is HealthState.UNREACHABLE:
            if local_required:
                raise InitializationError(f"local inference unavailable: {outcome.message}")
            logger.warning("Local inference unavailable, relying on fallback: %s", outcome.message)

        if self.remote is not None:
            self.health.register("remote_llm", required=False, probe=self._probe_remote)
        self.rag.attach_backends(self.local, self.remote)

    async def _start_protocol(self) -> None:
        if not self.settings.protocol.enabled:
            return
        self.protocol = ProtocolServer(
            self.settings.protocol,
            {
                messages.ANALYSIS_REQUEST: self.handle_analysis_request,
                messages.CONTEXT_REQUEST: self.handle_context_request,
            },
        )
        await self.protocol.start()
        self.health.register("protocol_server", required=False, probe=self._probe_protocol)

    async def _release(self) -> None:
        if self.protocol is not None:
            await self.protocol.stop()
            self.health.unregister("protocol_server")
            self.protocol = None
        if self.remote is not None:
            self.health.unregister("remote_llm")
            self.remote = None
        if self.local is not None:
            await self.local.aclose()
            self.health.unregister("local_llm")
            self.local = None
        if self.rag is not None:
            if self.rag.cache is not None:
                self.rag.cache.clear()
            self.health.unregister("rag_agent")
            self.rag = None
        if self.knowledge_base is not None:
            self.health.unregister("knowledge_base")
            self.knowledge_base = None
        if self.store is not None:
            await self.store.aclose()
            self.health.unregister("vector_store")
            self.store = None

    async def _probe_store(self) -> ProbeResult:
        try:
            await self.store.stats()
        except StoreError as exc:
            return ProbeResult(HealthState.UNREACHABLE, exc.message)
        return ProbeResult(HealthState.HEALTHY)

    async def _probe_local(self) -> ProbeResult:
        try:
            models = await self.local.list_models()
        except InferenceError as exc:
            return ProbeResult(HealthState.UNREACHABLE, exc.message)
        model = self.settings.generation.model
        if model not in models and f"{model}:latest" not in models:
            return ProbeResult(HealthState.DEGRADED, f"model {model} is not available")
        return ProbeResult(HealthState.HEALTHY)

    async def _probe_remote(self) -> ProbeResult:
        if await self.remote.probe():
            return ProbeResult(HealthState.HEALTHY)
        return ProbeResult(HealthState.UNREACHABLE, "remote backend did not respond")

    async def _probe_protocol(self) -> ProbeResult:
        if self.protocol is not None and self.protocol.running:
            return ProbeResult(HealthState.HEALTHY)
        return ProbeResult(HealthState.UNREACHABLE, "protocol server not running")
