"""
Retrieval and answer-refinement stages.

Each stage is usable on its own:
- QueryRewriter: conversational question -> search query
- HyDE: hypothetical answer used as the retrieval query
- VectorRetriever / KeywordRetriever: ranked Sources from the document store
- MMRReranker: relevance vs. redundancy trade-off
- SemanticChunker: query-ranked chunks of long documents
- Reflector: critique, re-retrieve and revise (at most 2 rounds by default)
"""

from .chunking import SemanticChunker
from .hyde import HyDE, HyDEResult
from .mmr import MMRReranker, RankableDocument
from .query_rewriter import QueryRewriter
from .reflection import ReflectionOutcome, Reflector
from .retriever import (
    KeywordRetriever,
    Retriever,
    RetrieverPriority,
    Source,
    VectorRetriever,
    dedupe_sources,
)
from .similarity import cosine_similarity, jaccard_similarity

__all__ = [
    "SemanticChunker",
    "HyDE",
    "HyDEResult",
    "MMRReranker",
    "RankableDocument",
    "QueryRewriter",
    "Reflector",
    "ReflectionOutcome",
    "Retriever",
    "RetrieverPriority",
    "KeywordRetriever",
    "VectorRetriever",
    "Source",
    "dedupe_sources",
    "cosine_similarity",
    "jaccard_similarity",
]
