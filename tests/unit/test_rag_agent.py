import asyncio

import pytest

from brain_integration.agent.rag_agent import (
    NO_CONTEXT_NOTICE,
    RagAgent,
    RetrievalOptions,
    build_prompt,
    fit_context,
)
from brain_integration.concurrency import CancellationToken, OperationCancelled
from brain_integration.config import GenerationConfig, RetrievalConfig
from brain_integration.errors import InferenceUnavailableError, StoreUnreachableError
from brain_integration.ingest.embedder import HashingEmbedder
from brain_integration.ingest.knowledge_base import KnowledgeBaseManager
from brain_integration.retrieval.cache import AnswerCache
from brain_integration.retrieval.vector_store import InMemoryVectorStore
from brain_integration.types import Document, RetrievalResult


class _RecordingBackend:
    def __init__(self, name: str = "local", reply: str = "Grounded answer [1].") -> None:
        self.name = name
        self.reply = reply
        self.prompts: list[str] = []

    async def generate(self, prompt: str, config: GenerationConfig) -> str:
        self.prompts.append(prompt)
        return self.reply


class _DownBackend:
    name = "local"

    async def generate(self, prompt: str, config: GenerationConfig) -> str:
        raise InferenceUnavailableError("local backend unreachable")


class _UnreachableStore(InMemoryVectorStore):
    async def search(self, query, k, threshold, metadata_filter=None):
        raise StoreUnreachableError("vector backend unreachable")


async def _agent_with_deal_docs(**kwargs) -> RagAgent:
    kb = KnowledgeBaseManager(InMemoryVectorStore(HashingEmbedder()))
    await kb.ingest(
        Document(
            id="dcf",
            text="DCF analysis shows strong cash flow generation with 15% WACC and 3% terminal growth rate.",
            metadata={"type": "dcf_analysis", "company": "Test Corp"},
        )
    )
    await kb.ingest(
        Document(
            id="lbo",
            text="LBO analysis indicates 25% IRR with 6x leverage and 5-year hold period.",
            metadata={"type": "lbo_analysis", "company": "Test Corp"},
        )
    )
    return RagAgent(kb, **kwargs)


@pytest.mark.asyncio
async def test_dcf_document_ranks_above_lbo_document() -> None:
    agent = await _agent_with_deal_docs()

    result = await agent.build_context("DCF cash flow analysis", agent.default_options(max_docs=5))
    everything = await agent.build_context(
        "DCF cash flow analysis", agent.default_options(max_docs=5, similarity_threshold=0.0)
    )

    assert result.ids[0] == "dcf"
    assert everything.ids.index("dcf") < everything.ids.index("lbo")


def test_fit_context_drops_lower_ranked_documents_whole() -> None:
    docs = [Document(id=f"d{i}", text="x" * 150) for i in range(3)]
    result = RetrievalResult(documents=docs, scores=[0.9, 0.8, 0.7])

    kept, text = fit_context(result, window_chars=320)

    assert kept.ids == ["d0", "d1"]
    assert text.startswith("[1] ")
    assert "\n\n[2] " in text
    assert len(text) <= 320


def test_fit_context_truncates_only_a_lone_oversized_document() -> None:
    result = RetrievalResult(documents=[Document(id="big", text="y" * 1000)], scores=[0.9])

    kept, text = fit_context(result, window_chars=200)

    assert kept.ids == ["big"]
    assert len(text) == 200


def test_prompt_without_context_states_it() -> None:
    prompt = build_prompt("What is the EV?", "")

    assert NO_CONTEXT_NOTICE in prompt
    assert prompt.rstrip().endswith("Answer:")


@pytest.mark.asyncio
async def test_answer_uses_retrieved_context_and_releases_pins() -> None:
    agent = await _agent_with_deal_docs()
    backend = _RecordingBackend()
    agent.attach_backends(backend)

    answer = await agent.answer_with_context("DCF cash flow analysis")

    assert answer.backend == "local"
    assert not answer.context_free
    assert answer.context.ids[0] == "dcf"
    assert "[1] DCF analysis shows strong cash flow" in backend.prompts[0]
    assert not agent.knowledge_base.is_pinned("dcf")


@pytest.mark.asyncio
async def test_unreachable_store_degrades_to_context_free_answer() -> None:
    kb = KnowledgeBaseManager(_UnreachableStore(HashingEmbedder()))
    agent = RagAgent(kb, cache=AnswerCache())
    backend = _RecordingBackend()
    agent.attach_backends(backend)

    answer = await agent.answer_with_context("Outlook for Test Corp")

    assert answer.context_free
    assert answer.text == "Grounded answer [1]."
    assert NO_CONTEXT_NOTICE in backend.prompts[0]
    assert len(agent.cache) == 0


@pytest.mark.asyncio
async def test_fallback_backend_used_when_primary_unavailable() -> None:
    agent = await _agent_with_deal_docs()
    fallback = _RecordingBackend(name="remote", reply="Fallback answer.")
    agent.attach_backends(_DownBackend(), fallback)

    answer = await agent.answer_with_context("LBO leverage")

    assert answer.backend == "remote"
    assert answer.text == "Fallback answer."
    assert agent.stats()["fallback_total"] == 1


@pytest.mark.asyncio
async def test_no_backend_reachable_raises_unavailable() -> None:
    agent = await _agent_with_deal_docs()
    agent.attach_backends(_DownBackend())

    with pytest.raises(InferenceUnavailableError):
        await agent.answer("LBO leverage")


@pytest.mark.asyncio
async def test_repeated_question_served_from_cache() -> None:
    agent = await _agent_with_deal_docs(
        retrieval_config=RetrievalConfig(max_retrieved_docs=1), cache=AnswerCache()
    )
    backend = _RecordingBackend()
    agent.attach_backends(backend)

    first = await agent.answer_with_context("DCF cash flow analysis")
    second = await agent.answer_with_context("dcf  cash flow analysis")

    assert not first.cached
    assert second.cached
    assert second.text == first.text
    assert len(backend.prompts) == 1


@pytest.mark.asyncio
async def test_cancelled_request_skips_generation() -> None:
    agent = await _agent_with_deal_docs()
    backend = _RecordingBackend()
    agent.attach_backends(backend)
    token = CancellationToken()
    token.cancel("client disconnected")

    with pytest.raises(OperationCancelled):
        await agent.answer_with_context("DCF cash flow analysis", cancel=token)

    assert backend.prompts == []
    assert not agent.knowledge_base.is_pinned("dcf")


def test_retrieval_options_reject_unknown_keys() -> None:
    with pytest.raises(ValueError):
        RetrievalOptions.from_config(RetrievalConfig(), top_n=3)


class _HeldBackend(_RecordingBackend):
    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def generate(self, prompt: str, config: GenerationConfig) -> str:
        self.prompts.append(prompt)
        self.started.set()
        await self.release.wait()
        return self.reply


@pytest.mark.asyncio
async def test_answer_not_cached_when_knowledge_changes_during_generation() -> None:
    kb = KnowledgeBaseManager(InMemoryVectorStore(HashingEmbedder()))
    await kb.ingest(
        Document(
            id="lbo",
            text="LBO analysis indicates 25% IRR with 6x leverage and 5-year hold period.",
            metadata={"type": "lbo_analysis", "company": "Test Corp"},
        )
    )
    agent = RagAgent(
        kb, retrieval_config=RetrievalConfig(max_retrieved_docs=1), cache=AnswerCache()
    )
    backend = _HeldBackend()
    agent.attach_backends(backend)

    pending = asyncio.create_task(agent.answer_with_context("DCF cash flow analysis"))
    await backend.started.wait()
    await kb.ingest(
        Document(
            id="dcf",
            text="DCF analysis shows strong cash flow generation with 15% WACC and 3% terminal growth rate.",
            metadata={"type": "dcf_analysis", "company": "Test Corp"},
        )
    )
    backend.release.set()
    stale = await pending

    assert "dcf" not in stale.context.ids
    assert len(agent.cache) == 0

    fresh = await agent.answer_with_context("DCF cash flow analysis")

    assert not fresh.cached
    assert fresh.context.ids == ["dcf"]
    assert len(backend.prompts) == 2
