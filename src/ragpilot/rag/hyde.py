"""
Hypothetical Document Embedding (HyDE).

A hypothetical answer tends to sit closer to real answer passages in
embedding space than the question does, so it is generated first and then
used as the retrieval query. Generation walks a fallback chain: an expert
passage, then a brief answer, then a fixed placeholder that quotes the query.
"""

from dataclasses import dataclass, field

from ..backends.base import LLMBackend
from ..core.cancellation import guarded
from ..core.strategies import FunctionStrategy, StrategyChain
from ..errors import QualityGuardRejection
from ..observability.logging import get_logger
from .prompts import HYDE_BRIEF_PROMPT, HYDE_PLACEHOLDER, HYDE_SYSTEM_PROMPT
from .retriever import Retriever, Source

logger = get_logger(__name__)

PLACEHOLDER = "placeholder"


@dataclass(frozen=True)
class HyDEResult:
    hypothetical_doc: str = ""
    hyde_results: list[Source] = field(default_factory=list)
    strategy: str | None = None

    @property
    def answer_context(self) -> str:
        """The passage to show the answer model; the placeholder only serves retrieval."""
        return "" if self.strategy == PLACEHOLDER else self.hypothetical_doc


class HyDE:
    """Generates a hypothetical answer and retrieves with it."""

    def __init__(
        self,
        backend: LLMBackend | None,
        retriever: Retriever | None,
        min_length: int = 50,
        retrieval_limit: int = 5,
    ):
        self.backend = backend
        self.retriever = retriever
        self.min_length = min_length
        self.retrieval_limit = retrieval_limit

    def with_retriever(self, retriever: Retriever | None) -> "HyDE":
        return HyDE(self.backend, retriever, self.min_length, self.retrieval_limit)

    async def generate_and_search(self, query: str) -> HyDEResult:
        if self.backend is None or self.retriever is None:
            logger.info("HyDE requires a chat backend and a retriever, skipping")
            return HyDEResult()

        chain = StrategyChain(
            "hyde",
            [
                FunctionStrategy("expert", lambda: self._expert_passage(query)),
                FunctionStrategy("brief", lambda: self._brief_answer(query)),
                FunctionStrategy(PLACEHOLDER, lambda: self._placeholder(query)),
            ],
        )
        generated = await chain.run()
        hypothetical_doc = generated.value or ""

        if len(hypothetical_doc) < self.min_length:
            return HyDEResult()

        try:
            hyde_results = await self.retriever.retrieve(hypothetical_doc, self.retrieval_limit)
        except Exception as e:
            logger.warning(f"HyDE retrieval failed: {e}")
            return HyDEResult()

        logger.info(
            f"HyDE retrieval returned {len(hyde_results)} results", strategy=generated.strategy
        )
        return HyDEResult(
            hypothetical_doc=hypothetical_doc,
            hyde_results=hyde_results,
            strategy=generated.strategy,
        )

    async def _expert_passage(self, query: str) -> str:
        messages = [
            {"role": "system", "content": HYDE_SYSTEM_PROMPT},
            {"role": "user", "content": query},
        ]
        return self._check(await guarded(self.backend.chat(messages), "chat.hyde"))

    async def _brief_answer(self, query: str) -> str:
        messages = [{"role": "user", "content": HYDE_BRIEF_PROMPT.format(query=query)}]
        return self._check(await guarded(self.backend.chat(messages), "chat.hyde_brief"))

    async def _placeholder(self, query: str) -> str:
        return HYDE_PLACEHOLDER.format(query=query)

    def _check(self, text: str) -> str:
        text = (text or "").strip()
        if not text:
            raise QualityGuardRejection("empty hypothetical document", guard="empty")
        if len(text) < self.min_length:
            raise QualityGuardRejection(
                f"hypothetical document shorter than {self.min_length} chars", guard="min_length"
            )
        return text
