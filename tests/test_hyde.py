"""Tests for hypothetical document generation and retrieval."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import StubBackend

from ragpilot.backends.base import DocumentRef
from ragpilot.errors import BackendCallFailure
from ragpilot.rag.hyde import HyDE, HyDEResult
from ragpilot.rag.retriever import Source

PRIMARY_30 = "Paris is in France, I believe."
FALLBACK_80 = "Paris is the capital of France and its largest city, located on the Seine river."


def _retriever(results=None):
    retriever = MagicMock()
    retriever.retrieve = AsyncMock(
        return_value=results
        if results is not None
        else [Source(DocumentRef("geo/france.md", "france"), 0.8, "Paris is the capital.")]
    )
    return retriever


class TestGenerateAndSearch:
    @pytest.mark.asyncio
    async def test_short_primary_falls_back_to_brief_answer(self):
        assert len(PRIMARY_30) < 50 <= len(FALLBACK_80)
        backend = StubBackend(responses=[PRIMARY_30, FALLBACK_80])
        retriever = _retriever()

        result = await HyDE(backend, retriever).generate_and_search("What is the capital of France?")

        assert result.hypothetical_doc == FALLBACK_80
        assert result.strategy == "brief"
        assert len(result.hyde_results) == 1
        retriever.retrieve.assert_awaited_once_with(FALLBACK_80, 5)

    @pytest.mark.asyncio
    async def test_primary_prompt_is_expert_passage(self):
        backend = StubBackend(responses=[FALLBACK_80])
        result = await HyDE(backend, _retriever()).generate_and_search("capital of France")

        messages = backend.chat_calls[0]
        assert messages[0]["role"] == "system"
        assert "As an AI" in messages[0]["content"]  # the prompt forbids the phrase
        assert messages[1] == {"role": "user", "content": "capital of France"}
        assert result.strategy == "expert"
        assert len(backend.chat_calls) == 1

    @pytest.mark.asyncio
    async def test_placeholder_when_both_generations_fail(self):
        backend = StubBackend(
            responses=[BackendCallFailure("down", operation="chat"), ""]
        )
        retriever = _retriever()

        result = await HyDE(backend, retriever).generate_and_search("rust borrow checker")

        assert result.strategy == "placeholder"
        assert '"rust borrow checker"' in result.hypothetical_doc
        assert len(result.hypothetical_doc) >= 50
        assert result.hyde_results
        assert result.answer_context == ""

    @pytest.mark.asyncio
    async def test_too_short_document_yields_empty_result(self):
        backend = StubBackend(responses=["short", "short"])
        retriever = _retriever()

        result = await HyDE(backend, retriever, min_length=1000).generate_and_search("query")

        assert result == HyDEResult()
        retriever.retrieve.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_collaborators(self):
        assert await HyDE(None, _retriever()).generate_and_search("q") == HyDEResult()
        assert await HyDE(StubBackend(), None).generate_and_search("q") == HyDEResult()

    @pytest.mark.asyncio
    async def test_with_retriever_returns_copy(self):
        original = _retriever()
        replacement = _retriever([])
        hyde = HyDE(StubBackend(responses=[FALLBACK_80]), original, min_length=20)

        scoped = hyde.with_retriever(replacement)
        result = await scoped.generate_and_search("capital of France")

        assert hyde.retriever is original
        assert scoped.min_length == 20
        assert result.hyde_results == []
        original.retrieve.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_generated_passage_is_answer_context(self):
        result = await HyDE(StubBackend(responses=[FALLBACK_80]), _retriever()).generate_and_search(
            "capital of France"
        )
        assert result.answer_context == FALLBACK_80

    @pytest.mark.asyncio
    async def test_raising_retriever_degrades_to_empty_result(self):
        retriever = MagicMock()
        retriever.retrieve = AsyncMock(side_effect=RuntimeError("index corrupted"))

        result = await HyDE(StubBackend(responses=[FALLBACK_80]), retriever).generate_and_search(
            "capital of France"
        )

        assert result == HyDEResult()
        retriever.retrieve.assert_awaited_once()
