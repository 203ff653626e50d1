"""
Maximal Marginal Relevance reranking.

Balances relevance against redundancy: each pick maximises
``lambda * relevance - (1 - lambda) * max_similarity_to_already_picked``.
lambda=1 is pure relevance order, lambda=0 is pure diversity.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from ..observability.logging import get_logger
from .retriever import Source
from .similarity import cosine_similarity, jaccard_similarity

logger = get_logger(__name__)


@dataclass
class RankableDocument:
    """Scoring record for MMR; `payload` carries the wrapped object, `extra` open fields."""

    score: float | None = None
    content: str | None = None
    embedding: list[float] | None = None
    similarity: float | None = None
    payload: Any = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def relevance(self) -> float:
        if self.score is not None:
            return self.score
        if self.similarity is not None:
            return self.similarity
        return 0.0

    @classmethod
    def from_source(cls, source: Source) -> "RankableDocument":
        return cls(content=source.content, similarity=source.similarity, payload=source)


class MMRReranker:
    """Diversity-aware reranker."""

    def rerank(
        self,
        docs: Sequence[RankableDocument],
        query: str,
        lambda_: float = 0.7,
        k: int = 5,
    ) -> list[RankableDocument]:
        """Select up to k documents; inputs of size <= k come back unchanged."""
        if not docs:
            return []

        if len(docs) <= k:
            return list(docs)

        if k <= 0:
            return []

        # sorted() is stable, so equal relevance keeps input order
        ranked = sorted(docs, key=lambda d: d.relevance, reverse=True)
        selected = [ranked[0]]
        remaining = ranked[1:]

        while len(selected) < k and remaining:
            best_index = -1
            best_score = float("-inf")

            for i, doc in enumerate(remaining):
                max_similarity = max(self.similarity(doc, chosen) for chosen in selected)
                mmr_score = lambda_ * doc.relevance - (1 - lambda_) * max_similarity
                if mmr_score > best_score:
                    best_score = mmr_score
                    best_index = i

            if best_index < 0:
                break
            selected.append(remaining.pop(best_index))

        logger.debug(f"MMR selected {len(selected)} of {len(docs)} documents", lambda_=lambda_)
        return selected

    def rerank_sources(
        self, sources: Sequence[Source], query: str, lambda_: float = 0.7, k: int = 5
    ) -> list[Source]:
        """Rerank Sources using their similarity as relevance and their text for redundancy."""
        docs = [RankableDocument.from_source(source) for source in sources]
        return [doc.payload for doc in self.rerank(docs, query, lambda_, k)]

    @staticmethod
    def similarity(doc_a: RankableDocument, doc_b: RankableDocument) -> float:
        """Embedding cosine when both have embeddings, else word-overlap, else 0."""
        if doc_a.embedding and doc_b.embedding:
            if len(doc_a.embedding) != len(doc_b.embedding):
                return 0.0
            return cosine_similarity(doc_a.embedding, doc_b.embedding)

        if doc_a.content and doc_b.content:
            return jaccard_similarity(doc_a.content, doc_b.content)

        return 0.0
