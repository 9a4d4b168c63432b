"""Retrieval-augmented answering over the knowledge base."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import replace
from typing import Any, Protocol

from langchain_core.prompts import PromptTemplate
from pydantic import BaseModel, ConfigDict, Field

from brain_integration.concurrency import CancellationToken, OperationCancelled
from brain_integration.config import GenerationConfig, RetrievalConfig
from brain_integration.errors import InferenceUnavailableError, StoreError
from brain_integration.ingest.knowledge_base import KnowledgeBaseManager, RetrievalScope
from brain_integration.retrieval.cache import AnswerCache, make_cache_key
from brain_integration.types import RagAnswer, RetrievalResult

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTIONS = """
You are a financial analyst assistant.

Rules:
1) Base every figure you cite on the provided context or the user's data.
2) Refer to context passages by their bracketed number, e.g. [2].
3) If the context does not cover the question, say so and answer from general knowledge.
4) Be concise and state assumptions explicitly.
""".strip()

NO_CONTEXT_NOTICE = "No supporting documents were found in the knowledge base."

_PROMPT = PromptTemplate.from_template(
    "{instructions}\n\nContext:\n{context}\n\nQuestion: {question}\n\nAnswer:"
)


class InferenceBackend(Protocol):
    name: str

    async def generate(self, prompt: str, config: GenerationConfig) -> str:
        """Generate text for `prompt`."""


class RetrievalOptions(BaseModel):
    """Per-request retrieval knobs; defaults come from `RetrievalConfig`."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_docs: int = Field(default=5, ge=1, le=100)
    context_window_chars: int = Field(default=4000, ge=200)
    similarity_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    metadata_filter: dict[str, Any] | None = None

    @classmethod
    def from_config(cls, config: RetrievalConfig, **overrides: Any) -> "RetrievalOptions":
        values: dict[str, Any] = {
            "max_docs": config.max_retrieved_docs,
            "context_window_chars": config.context_window_chars,
            "similarity_threshold": config.similarity_threshold,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls.model_validate(values)


def options_hash(
    options: RetrievalOptions, generation: GenerationConfig, instructions: str
) -> str:
    blob = "|".join(
        (
            options.model_dump_json(),
            generation.model_dump_json(),
            hashlib.sha256(instructions.encode("utf-8")).hexdigest(),
        )
    )
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


def fit_context(result: RetrievalResult, window_chars: int) -> tuple[RetrievalResult, str]:
    """Keep the best-ranked documents whose numbered blocks fit in `window_chars`.

    Lower-ranked documents are dropped whole. Only when the top document alone
    exceeds the window is its text cut, since nothing else would fit.
    """
    blocks: list[str] = []
    kept_docs = []
    kept_scores = []
    used = 0
    for rank, (doc, score) in enumerate(zip(result.documents, result.scores, strict=True), start=1):
        block = f"[{rank}] {doc.text.strip()}"
        separator = 2 if blocks else 0
        if used + separator + len(block) > window_chars:
            if not blocks:
                blocks.append(block[:window_chars])
                kept_docs.append(doc)
                kept_scores.append(score)
            break
        blocks.append(block)
        kept_docs.append(doc)
        kept_scores.append(score)
        used += separator + len(block)
    return RetrievalResult(documents=kept_docs, scores=kept_scores), "\n\n".join(blocks)


def build_prompt(query: str, context_text: str, instructions: str = DEFAULT_INSTRUCTIONS) -> str:
    return _PROMPT.format(
        instructions=instructions,
        context=context_text or NO_CONTEXT_NOTICE,
        question=query.strip(),
    )


class RagAgent:
    """Retrieves ranked context, assembles a bounded prompt and generates.

    Generation goes to the primary (local) backend; on
    `InferenceUnavailableError` the fallback backend, when attached, is tried.
    Retrieval failures degrade to a context-free answer instead of failing.
    """

    def __init__(
        self,
        knowledge_base: KnowledgeBaseManager,
        *,
        retrieval_config: RetrievalConfig | None = None,
        default_generation: GenerationConfig | None = None,
        cache: AnswerCache | None = None,
    ) -> None:
        self.knowledge_base = knowledge_base
        self.retrieval_config = retrieval_config or RetrievalConfig()
        self.default_generation = default_generation or GenerationConfig()
        self.cache = cache
        self.primary: InferenceBackend | None = None
        self.fallback: InferenceBackend | None = None
        self.answers_total = 0
        self.context_free_total = 0
        self.fallback_total = 0
        if cache is not None:
            knowledge_base.add_ingest_listener(cache.invalidate_for)
            knowledge_base.add_removal_listener(cache.invalidate_ids)

    def attach_backends(
        self, primary: InferenceBackend, fallback: InferenceBackend | None = None
    ) -> None:
        self.primary = primary
        self.fallback = fallback

    def default_options(self, **overrides: Any) -> RetrievalOptions:
        return RetrievalOptions.from_config(self.retrieval_config, **overrides)

    async def build_context(
        self,
        query: str,
        options: RetrievalOptions | None = None,
        *,
        scope: RetrievalScope | None = None,
    ) -> RetrievalResult:
        options = options or self.default_options()
        searcher = scope or self.knowledge_base
        return await searcher.search(
            query,
            options.max_docs,
            options.similarity_threshold,
            options.metadata_filter,
        )

    async def answer(
        self,
        query: str,
        options: RetrievalOptions | None = None,
        *,
        generation: GenerationConfig | None = None,
        cancel: CancellationToken | None = None,
    ) -> str:
        result = await self.answer_with_context(
            query, options, generation=generation, cancel=cancel
        )
        return result.text

    async def answer_with_context(
        self,
        query: str,
        options: RetrievalOptions | None = None,
        *,
        generation: GenerationConfig | None = None,
        cancel: CancellationToken | None = None,
        instructions: str = DEFAULT_INSTRUCTIONS,
        search_query: str | None = None,
    ) -> RagAnswer:
        """Answer `query`; `search_query`, when given, is what retrieval embeds."""
        options = options or self.default_options()
        generation = generation or self.default_generation
        search_query = search_query or query
        key = make_cache_key(
            f"{search_query}\n{query}", options_hash(options, generation, instructions)
        )

        if self.cache is not None:
            hit = self.cache.get(key)
            if hit is not None:
                logger.debug("Answer cache hit for %r", query[:80])
                return replace(hit, cached=True)

        generation_before = self.cache.generation if self.cache is not None else None
        retrieval_failed = False
        async with self.knowledge_base.retrieval() as scope:
            try:
                result = await self.build_context(search_query, options, scope=scope)
            except StoreError as exc:
                logger.warning("Retrieval failed, answering without context: %s", exc)
                result = RetrievalResult()
                retrieval_failed = True

            kept, context_text = fit_context(result, options.context_window_chars)
            prompt = build_prompt(query, context_text, instructions)

            if cancel is not None and cancel.cancelled:
                raise OperationCancelled(cancel.reason or "cancelled before generation")
            text, backend = await self._generate(prompt, generation)

        answer = RagAnswer(
            text=text,
            context=kept,
            backend=backend,
            context_free=not kept.documents,
        )
        self.answers_total += 1
        if answer.context_free:
            self.context_free_total += 1
        if self.cache is not None and not retrieval_failed:
            self.cache.put(
                key,
                answer,
                requested_docs=options.max_docs,
                metadata_filter=options.metadata_filter,
                generation=generation_before,
            )
        return answer

    async def _generate(self, prompt: str, config: GenerationConfig) -> tuple[str, str]:
        if self.primary is None:
            raise InferenceUnavailableError("no inference backend attached")
        try:
            return await self.primary.generate(prompt, config), self.primary.name
        except InferenceUnavailableError as exc:
            if self.fallback is None:
                raise
            logger.warning(
                "Primary backend %s unavailable (%s); using %s",
                self.primary.name,
                exc,
                self.fallback.name,
            )
            try:
                text = await self.fallback.generate(prompt, config)
            except InferenceUnavailableError as fallback_exc:
                raise InferenceUnavailableError(
                    f"no inference backend reachable: {exc}; {fallback_exc}"
                ) from fallback_exc
            self.fallback_total += 1
            return text, self.fallback.name

    def stats(self) -> dict[str, Any]:
        return {
            "answers_total": self.answers_total,
            "context_free_total": self.context_free_total,
            "fallback_total": self.fallback_total,
            "primary_backend": self.primary.name if self.primary else None,
            "fallback_backend": self.fallback.name if self.fallback else None,
            "cache": self.cache.stats() if self.cache is not None else None,
        }
