"""
End-to-end RAG orchestration.

RAGOrchestrator is built once with every collaborator it needs and never
mutated afterwards. A call to `run_rag` executes

    rewrite -> (HyDE search || plain retrieval) -> merge + dedupe
            -> MMR rerank -> [chunk] -> answer -> reflection

and returns a fresh RAGResult. Everything a single call needs (progress and
stream sinks, cancellation token, time budget, directory restriction) comes in
through RAGOptions, so concurrent calls on one orchestrator are independent.
"""

import asyncio
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

from ..backends.base import DocumentStore, LLMBackend, StreamSink
from ..config.settings import Settings, get_settings
from ..errors import ConfigurationError
from ..observability.logging import get_logger, get_trace_id, reset_trace_id, set_trace_id
from ..observability.metrics import get_metrics_collector
from ..observability.probe import clear_trace_metrics, probe
from ..observability.tracing import add_span_attributes, get_tracing_manager
from ..rag.chunking import SemanticChunker
from ..rag.context import build_answer_prompt
from ..rag.hyde import HyDE, HyDEResult
from ..rag.mmr import MMRReranker
from ..rag.query_rewriter import QueryRewriter
from ..rag.reflection import ReflectionOutcome, Reflector
from ..rag.retriever import (
    KeywordRetriever,
    Retriever,
    Source,
    VectorRetriever,
    dedupe_sources,
)
from .cancellation import CancellationToken, call_scope, check_cancelled, guarded

logger = get_logger(__name__)

ProgressSink = Callable[[str, int], None]


@dataclass(frozen=True)
class RAGOptions:
    """Per-call options for `RAGOrchestrator.run_rag`."""

    limit: int = 10
    streaming: bool = False
    on_chunk: StreamSink | None = None
    on_progress: ProgressSink | None = None
    lambda_: float = 0.6
    directory: str | None = None
    cancel_token: CancellationToken | None = None
    # Budget per backend call; None uses the orchestrator's call_timeout
    timeout: float | None = None

    def __post_init__(self):
        if self.limit <= 0:
            raise ValueError("limit must be positive")
        if not 0.0 <= self.lambda_ <= 1.0:
            raise ValueError("lambda_ must be within [0, 1]")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be positive")


@dataclass(frozen=True)
class RAGResult:
    """Answer, the sources it cites and how many reflection rounds refined it."""

    answer: str
    sources: list[Source]
    reflection_rounds: int
    optimized_query: str = ""
    hypothetical_doc: str = ""
    reflection_sources: list[Source] = field(default_factory=list)
    trace_id: str | None = None


@dataclass(frozen=True)
class RAGOrchestrator:
    """Immutable pipeline; construct directly or with `from_settings`."""

    backend: LLMBackend | None
    retriever: Retriever
    rewriter: QueryRewriter | None = None
    hyde: HyDE | None = None
    reranker: MMRReranker = field(default_factory=MMRReranker)
    reflector: Reflector | None = None
    chunker: SemanticChunker | None = None
    call_timeout: float | None = None

    @classmethod
    def from_settings(
        cls,
        backend: LLMBackend | None,
        store: DocumentStore,
        settings: Settings | None = None,
    ) -> "RAGOrchestrator":
        """Wire every stage from configuration."""
        settings = settings or get_settings()
        retrieval = settings.retrieval

        keyword = KeywordRetriever(
            store,
            path_prefix=retrieval.path_prefix,
            snippet_length=retrieval.snippet_length,
        )
        retriever = VectorRetriever(
            backend,
            store,
            similarity_threshold=retrieval.similarity_threshold,
            batch_size=retrieval.batch_size,
            snippet_length=retrieval.snippet_length,
            path_prefix=retrieval.path_prefix,
            fallbacks=[keyword],
        )

        rewriter = None
        if settings.rewrite.enabled:
            rewriter = QueryRewriter(
                backend,
                min_query_length=settings.rewrite.min_query_length,
                min_query_tokens=settings.rewrite.min_query_tokens,
                min_length=settings.rewrite.min_length,
                max_length=settings.rewrite.max_length,
            )

        hyde = None
        if settings.hyde.enabled:
            hyde = HyDE(
                backend,
                retriever,
                min_length=settings.hyde.min_length,
                retrieval_limit=retrieval.max_results,
            )

        reflector = None
        if settings.reflection.enabled:
            reflector = Reflector(
                backend,
                retriever,
                max_reflections=settings.reflection.max_reflections,
                min_critique_length=settings.reflection.min_critique_length,
                improvement_ratio=settings.reflection.improvement_ratio,
                search_limit=settings.reflection.search_limit,
            )

        chunker = None
        if settings.pipeline.chunk_sources:
            chunker = SemanticChunker(max_chunk_size=settings.pipeline.max_chunk_size)

        return cls(
            backend=backend,
            retriever=retriever,
            rewriter=rewriter,
            hyde=hyde,
            reranker=MMRReranker(),
            reflector=reflector,
            chunker=chunker,
            call_timeout=settings.pipeline.call_timeout,
        )

    async def run_rag(self, query: str, options: RAGOptions | None = None) -> RAGResult:
        """
        Answer a query from the document corpus.

        Raises:
            ConfigurationError: no chat backend is configured.
            asyncio.CancelledError: the options' cancel token fired.
            BackendCallFailure: the initial answer could not be generated.
        """
        if self.backend is None:
            raise ConfigurationError("No language-model backend configured")

        options = options or RAGOptions()
        # A trace ID already in context belongs to the caller (e.g. the API
        # handler), which also owns its stage timings
        caller_trace_id = get_trace_id()
        trace_id = caller_trace_id or uuid.uuid4().hex[:16]
        token = set_trace_id(trace_id)

        timeout = options.timeout if options.timeout is not None else self.call_timeout
        try:
            with get_tracing_manager().span("rag.run") as span:
                with call_scope(options.cancel_token, timeout):
                    check_cancelled()
                    result = await self._run(query, options, trace_id)
                span.set_attribute("result.reflection_rounds", result.reflection_rounds)
                return result
        finally:
            reset_trace_id(token)
            if caller_trace_id is None:
                clear_trace_metrics(trace_id)

    async def _run(self, query: str, options: RAGOptions, trace_id: str) -> RAGResult:
        start_time = time.perf_counter()
        streaming = options.streaming and options.on_chunk is not None
        retriever, hyde, reflector = self._scoped_stages(options.directory)

        logger.info(
            "Running RAG pipeline",
            query_length=len(query),
            limit=options.limit,
            streaming=streaming,
            directory=options.directory,
        )

        self._report(options, "Optimizing query...", 10)
        with probe("rag.rewrite", trace_id):
            optimized_query = query
            if self.rewriter is not None:
                optimized_query = await self.rewriter.rewrite_query(query)

        self._report(options, "Generating hypothetical answer...", 20)
        with probe("rag.retrieve", trace_id, limit=options.limit):
            hyde_task = asyncio.ensure_future(self._generate_hypothetical(hyde, optimized_query))
            self._report(options, "Searching knowledge base...", 40)
            try:
                plain_results = await retriever.retrieve(optimized_query, options.limit)
            except BaseException:
                hyde_task.cancel()
                raise
            hyde_result = await hyde_task
        check_cancelled()

        self._report(options, "Reranking results...", 60)
        with probe("rag.rerank", trace_id):
            candidates = dedupe_sources([*hyde_result.hyde_results, *plain_results])
            sources = self.reranker.rerank_sources(
                candidates, optimized_query, options.lambda_, options.limit
            )
            if self.chunker is not None:
                sources = self.chunker.create_contexts(sources, optimized_query)

        self._report(options, "Generating answer...", 75)
        with probe("rag.answer", trace_id, sources=len(sources)):
            prompt, language = build_answer_prompt(
                optimized_query or query, sources, hyde_result.answer_context
            )
            sink = options.on_chunk if streaming else None
            initial_answer = await guarded(
                self.backend.chat([{"role": "user", "content": prompt}], sink), "chat.answer"
            )

        self._report(options, "Enhancing with knowledge base...", 90)
        with probe("rag.reflect", trace_id):
            outcome = await self._reflect(reflector, query, initial_answer, sources, options)

        self._report(options, "Completed!", 100)

        duration = time.perf_counter() - start_time
        get_metrics_collector().record_rag_query(duration, len(sources), streaming)
        add_span_attributes(sources=len(sources), language=language.value)
        logger.info(
            f"RAG pipeline completed in {duration:.2f}s",
            sources=len(sources),
            rounds=outcome.rounds,
            candidates=len(candidates),
        )

        return RAGResult(
            answer=outcome.answer,
            sources=sources,
            reflection_rounds=outcome.rounds,
            optimized_query=optimized_query,
            hypothetical_doc=hyde_result.hypothetical_doc,
            reflection_sources=outcome.additional_sources,
            trace_id=trace_id,
        )

    def _scoped_stages(
        self, directory: str | None
    ) -> tuple[Retriever, HyDE | None, Reflector | None]:
        """Retrieval-backed stages, restricted to directory when one is given."""
        if not directory:
            return self.retriever, self.hyde, self.reflector

        retriever = self.retriever.with_path_prefix(directory)
        hyde = self.hyde.with_retriever(retriever) if self.hyde else None
        reflector = self.reflector.with_retriever(retriever) if self.reflector else None
        return retriever, hyde, reflector

    @staticmethod
    async def _generate_hypothetical(hyde: HyDE | None, query: str) -> HyDEResult:
        if hyde is None:
            return HyDEResult()
        return await hyde.generate_and_search(query)

    @staticmethod
    async def _reflect(
        reflector: Reflector | None,
        query: str,
        answer: str,
        sources: list[Source],
        options: RAGOptions,
    ) -> ReflectionOutcome:
        if reflector is None:
            return ReflectionOutcome(answer=answer, rounds=0)
        if options.streaming and options.on_chunk is not None:
            return await reflector.improve_with_reflection_streaming(
                query, answer, sources, options.on_chunk
            )
        return await reflector.improve_with_reflection(query, answer, sources)

    @staticmethod
    def _report(options: RAGOptions, stage: str, percent: int) -> None:
        if options.on_progress is None:
            return
        try:
            options.on_progress(stage, percent)
        except Exception as e:
            logger.warning(f"Progress callback failed at {percent}%: {e}")
