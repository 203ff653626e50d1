"""
Retrieval over the document store.

Retrievers are capabilities, not a class hierarchy: anything with a `name`, a
`priority` and `retrieve(query, limit)` satisfies the Retriever protocol.
VectorRetriever ranks documents by embedding similarity; when the query
itself cannot be embedded it hands over to its fallback retrievers (usually a
KeywordRetriever) in ascending priority order through a StrategyChain.

Neither retriever raises from `retrieve`: on unrecoverable failure the result
is an empty list.
"""

import asyncio
import math
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import IntEnum
from typing import Protocol, runtime_checkable

from ..backends.base import DocumentRef, DocumentStore, LLMBackend
from ..core.cancellation import check_cancelled, guarded
from ..core.strategies import FunctionStrategy, StrategyChain
from ..errors import BackendCallFailure
from ..observability.logging import get_logger
from .similarity import cosine_similarity

logger = get_logger(__name__)

_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_PUNCTUATION = re.compile(r"[^\w\s]")


@dataclass(frozen=True)
class Source:
    """A retrieved document excerpt with its retrieval confidence."""

    document: DocumentRef
    similarity: float
    content: str

    @property
    def path(self) -> str:
        return self.document.path

    @property
    def basename(self) -> str:
        return self.document.basename


def dedupe_sources(sources: Iterable[Source]) -> list[Source]:
    """Keep the first Source per document path, preserving order."""
    seen: set[str] = set()
    unique = []
    for source in sources:
        if source.path in seen:
            continue
        seen.add(source.path)
        unique.append(source)
    return unique


class RetrieverPriority(IntEnum):
    """Ordering value for retrievers; lower runs first."""

    VECTOR = 1
    KEYWORD = 3


@runtime_checkable
class Retriever(Protocol):
    name: str
    priority: int

    async def retrieve(self, query: str, limit: int = 5) -> list[Source]:
        ...

    def with_path_prefix(self, path_prefix: str | None) -> "Retriever":
        """A copy of this retriever restricted to a corpus sub-path."""
        ...


def extract_snippet(content: str, query: str, snippet_length: int = 1000) -> str:
    """
    Pick the part of a document most relevant to the query.

    Slides a three-sentence window over the document and keeps the window
    containing the largest fraction of the query's words. If no window
    contains any query word, returns the text around the first verbatim
    occurrence of the query, or the head of the document.
    """
    query_words = set(query.lower().split())
    sentences = _SENTENCE_SPLIT.split(content)

    best_score = 0.0
    best_snippet = ""
    if query_words:
        for i in range(len(sentences) - 2):
            window = ". ".join(sentences[i : i + 3])
            window_words = set(window.lower().split())
            score = len(query_words & window_words) / len(query_words)
            if score > best_score:
                best_score = score
                best_snippet = window

    if best_snippet:
        return best_snippet

    index = content.lower().find(query.lower()) if query else -1
    if index != -1:
        margin = max(0, (snippet_length - len(query)) // 2)
        start = max(0, index - margin)
        end = min(len(content), index + len(query) + margin)
        return content[start:end]

    return content[:snippet_length]


class KeywordRetriever:
    """Term-frequency search used when embeddings are unavailable."""

    name = "keyword"

    def __init__(
        self,
        store: DocumentStore,
        path_prefix: str | None = None,
        snippet_length: int = 1000,
        priority: int = RetrieverPriority.KEYWORD,
    ):
        self.store = store
        self.path_prefix = path_prefix
        self.snippet_length = snippet_length
        self.priority = priority

    @staticmethod
    def tokenize(query: str) -> list[str]:
        """Distinct lower-cased words longer than three characters, punctuation stripped."""
        words = _PUNCTUATION.sub(" ", query.lower()).split()
        return list(dict.fromkeys(w for w in words if len(w) > 3))

    def with_path_prefix(self, path_prefix: str | None) -> "KeywordRetriever":
        return KeywordRetriever(self.store, path_prefix, self.snippet_length, self.priority)

    async def retrieve(self, query: str, limit: int = 5) -> list[Source]:
        try:
            return await self.search(query, limit)
        except Exception as e:
            logger.error(f"Keyword retrieval failed: {e}")
            return []

    async def search(self, query: str, limit: int = 5) -> list[Source]:
        """Like retrieve, but lets store failures propagate."""
        tokens = self.tokenize(query)
        if not tokens:
            return []

        patterns = [re.compile(re.escape(token), re.IGNORECASE) for token in tokens]
        required = max(1, math.ceil(len(tokens) / 2))

        scored: list[Source] = []
        for ref in await self.store.list_documents(self.path_prefix):
            check_cancelled()
            try:
                content = await self.store.read_document(ref)
            except Exception as e:
                logger.warning(f"Skipping {ref.path} for keyword search: {e}")
                continue

            counts = [len(pattern.findall(content)) for pattern in patterns]
            matched = sum(1 for count in counts if count > 0)
            if matched < required:
                continue

            score = sum(counts) / max(len(content), 1)
            snippet = extract_snippet(content, query, self.snippet_length)
            scored.append(Source(document=ref, similarity=score, content=snippet))

        scored.sort(key=lambda s: s.similarity, reverse=True)
        logger.debug(f"Keyword search matched {len(scored)} documents", tokens=len(tokens))
        return scored[:limit]


class VectorRetriever:
    """Embedding-based document search with ordered fallbacks."""

    name = "vector"

    def __init__(
        self,
        backend: LLMBackend | None,
        store: DocumentStore,
        similarity_threshold: float = 0.5,
        batch_size: int = 5,
        snippet_length: int = 1000,
        path_prefix: str | None = None,
        fallbacks: Sequence[Retriever] = (),
        priority: int = RetrieverPriority.VECTOR,
    ):
        self.backend = backend
        self.store = store
        self.similarity_threshold = similarity_threshold
        self.batch_size = batch_size
        self.snippet_length = snippet_length
        self.path_prefix = path_prefix
        self.fallbacks = tuple(sorted(fallbacks, key=lambda r: r.priority))
        self.priority = priority

    def with_path_prefix(self, path_prefix: str | None) -> "VectorRetriever":
        return VectorRetriever(
            self.backend,
            self.store,
            similarity_threshold=self.similarity_threshold,
            batch_size=self.batch_size,
            snippet_length=self.snippet_length,
            path_prefix=path_prefix,
            fallbacks=[fallback.with_path_prefix(path_prefix) for fallback in self.fallbacks],
            priority=self.priority,
        )

    async def retrieve(self, query: str, limit: int = 5) -> list[Source]:
        strategies = [FunctionStrategy(self.name, lambda: self.search(query, limit))]
        for fallback in self.fallbacks:
            strategies.append(
                FunctionStrategy(fallback.name, lambda r=fallback: r.retrieve(query, limit))
            )

        result = await StrategyChain("retrieval", strategies).run()
        if not result.ok:
            return []

        sources = result.value or []
        logger.info(
            f"Retrieved {len(sources)} sources",
            retriever=result.strategy,
            limit=limit,
        )
        return sources

    async def search(self, query: str, limit: int = 5) -> list[Source]:
        """
        Vector search without fallback.

        Raises if the candidate list or the query embedding cannot be
        obtained. Failures on individual documents only skip that document.
        """
        if self.backend is None:
            raise BackendCallFailure("No embedding backend available", operation="embed")

        refs = await self.store.list_documents(self.path_prefix)
        if not refs:
            return []

        query_embedding = await guarded(self.backend.embed(query), "embed.query")

        results: list[Source] = []
        for start in range(0, len(refs), self.batch_size):
            batch = refs[start : start + self.batch_size]
            outcomes = await asyncio.gather(
                *(self._score_document(ref, query, query_embedding) for ref in batch),
                return_exceptions=True,
            )
            for ref, outcome in zip(batch, outcomes, strict=True):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                if isinstance(outcome, Exception):
                    logger.warning(f"Error processing {ref.path} for vector search: {outcome}")
                    continue
                if outcome is not None:
                    results.append(outcome)
            check_cancelled()

        results.sort(key=lambda s: s.similarity, reverse=True)
        return results[:limit]

    async def _score_document(
        self, ref: DocumentRef, query: str, query_embedding: list[float]
    ) -> Source | None:
        content = await self.store.read_document(ref)
        embedding = await guarded(self.backend.embed(content), "embed.document")
        similarity = cosine_similarity(query_embedding, embedding)
        if similarity <= self.similarity_threshold:
            return None
        snippet = extract_snippet(content, query, self.snippet_length)
        return Source(document=ref, similarity=similarity, content=snippet)
