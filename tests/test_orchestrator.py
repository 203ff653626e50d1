"""
Tests for the end-to-end RAG pipeline.

Tests cover:
- The full rewrite -> HyDE/retrieve -> rerank -> answer -> reflect flow
- Progress milestones and streaming output
- Per-call directory restriction without mutating shared stages
- Configuration errors, option validation and cancellation
- Trace ID ownership and per-trace stage timings
- Wiring from settings
"""

import asyncio
import dataclasses

import pytest
from conftest import InMemoryDocumentStore, StubBackend, system_prompt, user_prompt

from ragpilot.config.settings import Settings
from ragpilot.core.cancellation import CancellationToken
from ragpilot.core.orchestrator import RAGOptions, RAGOrchestrator, RAGResult
from ragpilot.errors import BackendCallFailure, ConfigurationError
from ragpilot.observability.logging import get_trace_id, reset_trace_id, set_trace_id
from ragpilot.observability.probe import _METRICS_STORE, clear_trace_metrics, get_trace_metrics
from ragpilot.rag.chunking import SemanticChunker
from ragpilot.rag.hyde import HyDE
from ragpilot.rag.prompts import ENHANCING_NOTICE
from ragpilot.rag.query_rewriter import QueryRewriter
from ragpilot.rag.reflection import Reflector
from ragpilot.rag.retriever import KeywordRetriever, VectorRetriever

QUESTION = "What is the capital of France?"
PARIS_PASSAGE = (
    "Paris is the capital of France and its largest city. "
    "The Seine flows through the city centre."
)
ANSWER = "The capital of France is Paris [Source 1]."


def france_handler(answer=ANSWER):
    def handler(messages):
        system = system_prompt(messages)
        prompt = user_prompt(messages)
        if "search query optimization expert" in system:
            return "capital of France"
        if "factual passage" in system:
            return PARIS_PASSAGE
        if "Please answer the following question" in prompt:
            return answer
        if "evaluate the quality" in prompt:
            return ""
        raise AssertionError(f"unexpected prompt: {messages}")

    return handler


def build_orchestrator(backend, store, **overrides):
    retriever = VectorRetriever(backend, store, fallbacks=[KeywordRetriever(store)])
    stages = {
        "rewriter": QueryRewriter(backend),
        "hyde": HyDE(backend, retriever),
        "reflector": Reflector(backend, retriever),
    }
    stages.update(overrides)
    return RAGOrchestrator(backend=backend, retriever=retriever, **stages)


class TestRunRag:
    @pytest.mark.asyncio
    async def test_france_end_to_end(self, france_store):
        backend = StubBackend(chat_handler=france_handler())
        orchestrator = build_orchestrator(backend, france_store)

        result = await orchestrator.run_rag(QUESTION)

        assert isinstance(result, RAGResult)
        assert result.answer == ANSWER
        assert [s.path for s in result.sources] == ["geo/france.md"]
        assert result.reflection_rounds == 0
        assert result.optimized_query == "capital of France"
        assert result.hypothetical_doc == PARIS_PASSAGE
        assert result.trace_id

    @pytest.mark.asyncio
    async def test_answer_prompt_uses_optimized_query_and_hypothetical(self, france_store):
        backend = StubBackend(chat_handler=france_handler())
        await build_orchestrator(backend, france_store).run_rag(QUESTION)

        answer_prompt = next(
            user_prompt(m)
            for m in backend.chat_calls
            if "Please answer the following question" in user_prompt(m)
        )
        assert 'QUESTION: "capital of France"' in answer_prompt
        assert "Source [1]: france\nParis is the capital of France." in answer_prompt
        assert "Hypothetical answer based on the query:\n" + PARIS_PASSAGE in answer_prompt

    @pytest.mark.asyncio
    async def test_placeholder_passage_stays_out_of_answer_prompt(self, france_store):
        base = france_handler()

        def handler(messages):
            if "factual passage" in system_prompt(messages) or "briefly" in user_prompt(messages):
                raise BackendCallFailure("model overloaded", operation="chat")
            return base(messages)

        backend = StubBackend(chat_handler=handler)
        result = await build_orchestrator(backend, france_store).run_rag(QUESTION)

        answer_prompt = next(
            user_prompt(m)
            for m in backend.chat_calls
            if "Please answer the following question" in user_prompt(m)
        )
        assert result.hypothetical_doc.startswith("This passage discusses")
        assert "Hypothetical answer based on the query" not in answer_prompt
        assert "This passage discusses" not in answer_prompt
        assert result.answer == ANSWER

    @pytest.mark.asyncio
    async def test_progress_milestones_in_order(self, france_store):
        progress = []
        orchestrator = build_orchestrator(
            StubBackend(chat_handler=france_handler()), france_store
        )

        await orchestrator.run_rag(
            QUESTION, RAGOptions(on_progress=lambda stage, pct: progress.append(pct))
        )

        assert progress == [10, 20, 40, 60, 75, 90, 100]

    @pytest.mark.asyncio
    async def test_failing_progress_sink_does_not_abort(self, france_store):
        def broken(stage, percent):
            raise RuntimeError("ui gone")

        orchestrator = build_orchestrator(
            StubBackend(chat_handler=france_handler()), france_store
        )
        result = await orchestrator.run_rag(QUESTION, RAGOptions(on_progress=broken))
        assert result.answer == ANSWER

    @pytest.mark.asyncio
    async def test_streaming_pushes_answer_then_reflection_notice(self, france_store):
        chunks = []
        orchestrator = build_orchestrator(
            StubBackend(chat_handler=france_handler()), france_store
        )

        result = await orchestrator.run_rag(
            QUESTION, RAGOptions(streaming=True, on_chunk=chunks.append)
        )

        assert "".join(chunks) == ANSWER + ENHANCING_NOTICE
        assert len(chunks) > 2
        assert result.answer == ANSWER

    @pytest.mark.asyncio
    async def test_on_chunk_without_streaming_is_ignored(self, france_store):
        chunks = []
        orchestrator = build_orchestrator(
            StubBackend(chat_handler=france_handler()), france_store
        )

        await orchestrator.run_rag(QUESTION, RAGOptions(on_chunk=chunks.append))

        assert chunks == []

    @pytest.mark.asyncio
    async def test_minimal_pipeline_without_optional_stages(self, france_store):
        backend = StubBackend(chat_handler=france_handler())
        orchestrator = build_orchestrator(
            backend, france_store, rewriter=None, hyde=None, reflector=None
        )

        result = await orchestrator.run_rag("capital of France")

        assert result.answer == ANSWER
        assert result.hypothetical_doc == ""
        assert len(backend.chat_calls) == 1

    @pytest.mark.asyncio
    async def test_limit_bounds_sources(self, notes_store):
        backend = StubBackend(chat_handler=france_handler())
        retriever = VectorRetriever(backend, notes_store, similarity_threshold=-1.0)
        orchestrator = RAGOrchestrator(backend=backend, retriever=retriever)

        result = await orchestrator.run_rag("capital of France", RAGOptions(limit=2))

        assert len(result.sources) == 2
        assert result.sources[0].path == "geo/france.md"

    @pytest.mark.asyncio
    async def test_chunker_narrows_sources(self, france_store):
        backend = StubBackend(chat_handler=france_handler())
        orchestrator = build_orchestrator(
            backend, france_store, chunker=SemanticChunker(max_chunk_size=200)
        )

        result = await orchestrator.run_rag(QUESTION)

        assert result.sources
        assert all(len(s.content) <= 200 for s in result.sources)

    @pytest.mark.asyncio
    async def test_reflection_sources_reported_separately(self, france_store):
        critique = (
            "The answer is short. Missing:\n1. Paris population figures\n2. Paris history facts\n"
        )
        revision = ANSWER + " Paris has been the capital since the tenth century [Source 2]."
        critiques = [critique, ""]

        def handler(messages):
            prompt = user_prompt(messages)
            if "evaluate the quality" in prompt:
                return critiques.pop(0)
            if "Q&A assistant" in system_prompt(messages):
                return revision
            return france_handler()(messages)

        orchestrator = build_orchestrator(StubBackend(chat_handler=handler), france_store)

        result = await orchestrator.run_rag(QUESTION)

        assert result.answer == revision
        assert result.reflection_rounds == 1
        assert [s.path for s in result.sources] == ["geo/france.md"]
        assert result.reflection_sources

    @pytest.mark.asyncio
    async def test_keyword_fallback_when_embeddings_fail(self, france_store):
        def broken_embed(text):
            return BackendCallFailure("embedding down", operation="embed")

        backend = StubBackend(chat_handler=france_handler(), embed_handler=broken_embed)
        orchestrator = build_orchestrator(backend, france_store, hyde=None, reflector=None)

        result = await orchestrator.run_rag(QUESTION)

        assert [s.path for s in result.sources] == ["geo/france.md"]


class TestDirectoryRestriction:
    @pytest.mark.asyncio
    async def test_only_directory_documents_are_read(self, notes_store):
        backend = StubBackend(chat_handler=france_handler())
        orchestrator = build_orchestrator(backend, notes_store)

        result = await orchestrator.run_rag(QUESTION, RAGOptions(directory="geo/"))

        assert notes_store.reads
        assert all(path.startswith("geo/") for path in notes_store.reads)
        assert all(s.path.startswith("geo/") for s in result.sources)

    @pytest.mark.asyncio
    async def test_shared_stages_are_not_mutated(self, notes_store):
        orchestrator = build_orchestrator(
            StubBackend(chat_handler=france_handler()), notes_store
        )

        await orchestrator.run_rag(QUESTION, RAGOptions(directory="geo/"))

        assert orchestrator.retriever.path_prefix is None
        assert orchestrator.hyde.retriever is orchestrator.retriever
        assert orchestrator.reflector.retriever is orchestrator.retriever

    @pytest.mark.asyncio
    async def test_concurrent_calls_with_different_directories(self, notes_store):
        orchestrator = build_orchestrator(
            StubBackend(chat_handler=france_handler()),
            notes_store,
            rewriter=None,
            hyde=None,
            reflector=None,
        )
        geo, dev = await asyncio.gather(
            orchestrator.run_rag("capital of France", RAGOptions(directory="geo/")),
            orchestrator.run_rag("python code", RAGOptions(directory="dev/")),
        )

        assert all(s.path.startswith("geo/") for s in geo.sources)
        assert [s.path for s in dev.sources] == ["dev/python.md"]


class TestErrors:
    @pytest.mark.asyncio
    async def test_missing_backend_is_configuration_error(self, france_store):
        orchestrator = RAGOrchestrator(backend=None, retriever=KeywordRetriever(france_store))
        with pytest.raises(ConfigurationError):
            await orchestrator.run_rag(QUESTION)

    @pytest.mark.asyncio
    async def test_answer_failure_propagates(self, france_store):
        def handler(messages):
            if "Please answer the following question" in user_prompt(messages):
                raise BackendCallFailure("model crashed", operation="chat")
            return france_handler()(messages)

        orchestrator = build_orchestrator(StubBackend(chat_handler=handler), france_store)

        with pytest.raises(BackendCallFailure):
            await orchestrator.run_rag(QUESTION)

    @pytest.mark.asyncio
    async def test_pre_cancelled_token(self, france_store):
        backend = StubBackend(chat_handler=france_handler())
        token = CancellationToken()
        token.cancel()

        with pytest.raises(asyncio.CancelledError):
            await build_orchestrator(backend, france_store).run_rag(
                QUESTION, RAGOptions(cancel_token=token)
            )

        assert backend.chat_calls == []

    @pytest.mark.asyncio
    async def test_cancel_during_run(self, france_store):
        token = CancellationToken()

        def handler(messages):
            if "Please answer the following question" in user_prompt(messages):
                token.cancel("user stopped")
            return france_handler()(messages)

        backend = StubBackend(chat_handler=handler)

        with pytest.raises(asyncio.CancelledError):
            await build_orchestrator(backend, france_store).run_rag(
                QUESTION, RAGOptions(cancel_token=token)
            )

        assert not any("evaluate the quality" in user_prompt(m) for m in backend.chat_calls)


class TestOptionsAndResult:
    @pytest.mark.parametrize(
        "kwargs",
        [{"limit": 0}, {"lambda_": 1.5}, {"lambda_": -0.1}, {"timeout": 0}],
    )
    def test_invalid_options(self, kwargs):
        with pytest.raises(ValueError):
            RAGOptions(**kwargs)

    def test_defaults(self):
        options = RAGOptions()
        assert (options.limit, options.lambda_, options.streaming) == (10, 0.6, False)

    def test_orchestrator_is_immutable(self, france_store):
        orchestrator = build_orchestrator(StubBackend(), france_store)
        with pytest.raises(dataclasses.FrozenInstanceError):
            orchestrator.backend = None


class TestFromSettings:
    def test_all_stages_enabled_by_default(self):
        store = InMemoryDocumentStore({})
        backend = StubBackend()

        orchestrator = RAGOrchestrator.from_settings(backend, store, Settings())

        assert isinstance(orchestrator.retriever, VectorRetriever)
        assert [f.name for f in orchestrator.retriever.fallbacks] == ["keyword"]
        assert orchestrator.rewriter is not None
        assert orchestrator.hyde.retriever is orchestrator.retriever
        assert orchestrator.reflector.max_reflections == 2
        assert orchestrator.chunker is None
        assert orchestrator.call_timeout is None

    def test_disabled_stages_are_omitted(self):
        settings = Settings(
            rewrite={"enabled": False},
            hyde={"enabled": False},
            reflection={"enabled": False},
            pipeline={"chunk_sources": True, "max_chunk_size": 300, "call_timeout": 5.0},
            retrieval={"similarity_threshold": 0.3},
        )

        orchestrator = RAGOrchestrator.from_settings(
            StubBackend(), InMemoryDocumentStore({}), settings
        )

        assert orchestrator.rewriter is None
        assert orchestrator.hyde is None
        assert orchestrator.reflector is None
        assert orchestrator.chunker.max_chunk_size == 300
        assert orchestrator.call_timeout == 5.0
        assert orchestrator.retriever.similarity_threshold == 0.3


class TestTraceIds:
    @pytest.mark.asyncio
    async def test_each_run_gets_its_own_trace_id(self, france_store):
        orchestrator = build_orchestrator(
            StubBackend(chat_handler=france_handler()), france_store
        )

        first = await orchestrator.run_rag(QUESTION)
        second = await orchestrator.run_rag(QUESTION)

        assert first.trace_id != second.trace_id
        assert get_trace_id() is None

    @pytest.mark.asyncio
    async def test_generated_trace_leaves_no_stage_timings(self, france_store):
        orchestrator = build_orchestrator(
            StubBackend(chat_handler=france_handler()), france_store
        )

        results = await asyncio.gather(*(orchestrator.run_rag(QUESTION) for _ in range(20)))

        assert len({r.trace_id for r in results}) == 20
        assert _METRICS_STORE == {}

    @pytest.mark.asyncio
    async def test_caller_trace_id_is_reused_and_restored(self, france_store):
        orchestrator = build_orchestrator(
            StubBackend(chat_handler=france_handler()), france_store
        )
        token = set_trace_id("caller-trace")
        try:
            result = await orchestrator.run_rag(QUESTION)

            assert result.trace_id == "caller-trace"
            assert get_trace_id() == "caller-trace"
            # The caller owns the timings and clears them itself
            assert "rag.answer" in get_trace_metrics("caller-trace")
        finally:
            clear_trace_metrics("caller-trace")
            reset_trace_id(token)

    @pytest.mark.asyncio
    async def test_trace_id_restored_after_failure(self, france_store):
        def handler(messages):
            raise BackendCallFailure("down", operation="chat")

        orchestrator = build_orchestrator(
            StubBackend(chat_handler=handler), france_store, rewriter=None, hyde=None
        )

        with pytest.raises(BackendCallFailure):
            await orchestrator.run_rag(QUESTION)

        assert get_trace_id() is None
        assert _METRICS_STORE == {}
