"""
RAGPilot - query-time Retrieval-Augmented Generation over a personal notes corpus.

Given a question, the pipeline rewrites it into a search query, retrieves
with both the query and a hypothetical answer (HyDE), reranks the merged
candidates with MMR, generates a grounded answer with numbered citations and
refines it through up to two critique/re-retrieve/revise rounds.

Quick Start:
    >>> from ragpilot import RAGOrchestrator, RAGOptions
    >>> from ragpilot.config.container import setup_container
    >>>
    >>> container = setup_container()
    >>> orchestrator = container.get("rag_orchestrator")
    >>> result = await orchestrator.run_rag(
    ...     "What did I decide about the database migration?",
    ...     RAGOptions(limit=5, streaming=True, on_chunk=print),
    ... )
    >>> print(result.reflection_rounds, [s.basename for s in result.sources])

CLI:
    $ ragpilot ask "How do I rotate the API keys?" --directory ops/
    $ ragpilot serve --port 8000

API Server:
    $ curl -X POST http://localhost:8000/query \
      -H 'Content-Type: application/json' \
      -d '{"query":"How do I rotate the API keys?","limit":5}'

Configuration:
    Environment variables with the RAGPILOT_ prefix:
    - RAGPILOT_MODELS__CHAT__NAME=llama3.1:8b
    - RAGPILOT_MODELS__CHAT__PROVIDER=ollama
    - RAGPILOT_RETRIEVAL__KNOWLEDGE_BASE_PATH=~/notes
    - RAGPILOT_PIPELINE__CALL_TIMEOUT=60
"""

__version__ = "0.3.0"

from .config.settings import Settings
from .core.orchestrator import RAGOptions, RAGOrchestrator, RAGResult
from .rag.retriever import Source

__all__ = [
    "RAGOrchestrator",
    "RAGOptions",
    "RAGResult",
    "Source",
    "Settings",
]
