"""
Query rewriting for retrieval.
"""

import re

from ..backends.base import LLMBackend
from ..core.cancellation import guarded
from ..errors import QualityGuardRejection
from ..observability.logging import get_logger
from .prompts import REWRITE_SYSTEM_PROMPT, REWRITE_USER_PROMPT

logger = get_logger(__name__)

_PREFIX = re.compile(r"^Rewritten query:\s*", re.IGNORECASE)


class QueryRewriter:
    """Turns a conversational question into a keyword-rich search query."""

    def __init__(
        self,
        backend: LLMBackend | None,
        min_query_length: int = 10,
        min_query_tokens: int = 3,
        min_length: int = 3,
        max_length: int = 200,
    ):
        self.backend = backend
        self.min_query_length = min_query_length
        self.min_query_tokens = min_query_tokens
        self.min_length = min_length
        self.max_length = max_length

    def should_rewrite(self, query: str) -> bool:
        """Short or low-information queries are used as-is."""
        return (
            len(query) >= self.min_query_length
            and len(query.split(" ")) >= self.min_query_tokens
        )

    async def rewrite_query(self, original: str) -> str:
        """Return an optimized query, or `original` on any failure."""
        if not self.should_rewrite(original):
            return original

        if self.backend is None:
            logger.info("No chat backend configured, using original query")
            return original

        messages = [
            {"role": "system", "content": REWRITE_SYSTEM_PROMPT},
            {"role": "user", "content": REWRITE_USER_PROMPT.format(query=original)},
        ]
        try:
            response = await guarded(self.backend.chat(messages), "chat.rewrite")
            rewritten = self.clean(response)
        except QualityGuardRejection as e:
            logger.info(f"Rewritten query rejected ({e.guard}), using original")
            return original
        except Exception as e:
            logger.warning(f"Error rewriting query: {e}")
            return original

        logger.info(f'Rewritten query: "{rewritten}"', original_length=len(original))
        return rewritten

    def clean(self, response: str) -> str:
        """Strip quoting, a label prefix and a trailing period; enforce length bounds."""
        cleaned = response.strip()
        if cleaned[:1] in ("'", '"'):
            cleaned = cleaned[1:]
        if cleaned[-1:] in ("'", '"'):
            cleaned = cleaned[:-1]
        cleaned = _PREFIX.sub("", cleaned, count=1)
        if cleaned.endswith("."):
            cleaned = cleaned[:-1]

        if not cleaned:
            raise QualityGuardRejection("empty rewrite", guard="empty")
        if len(cleaned) < self.min_length:
            raise QualityGuardRejection("rewrite too short", guard="min_length")
        if len(cleaned) > self.max_length:
            raise QualityGuardRejection("rewrite too long", guard="max_length")
        return cleaned
