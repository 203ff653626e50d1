"""
Global pytest configuration, stub collaborators and test isolation.

The stubs implement the LLMBackend and DocumentStore protocols in memory:
StubBackend routes chat calls through a handler (or a response queue) and
embeds text as a bag-of-words vector over a small fixed vocabulary, which
keeps cosine similarities predictable.
"""

import re
import sys
from collections.abc import Callable, Sequence

import pytest

from ragpilot.backends.base import DocumentRef
from ragpilot.errors import BackendCallFailure

VOCABULARY = [
    "paris",
    "capital",
    "france",
    "city",
    "seine",
    "berlin",
    "germany",
    "europe",
    "garden",
    "tomato",
    "soil",
    "python",
    "code",
]

_WORD = re.compile(r"[a-z]+")


def bag_of_words(text: str) -> list[float]:
    words = _WORD.findall(text.lower())
    return [float(words.count(term)) for term in VOCABULARY]


class StubBackend:
    """In-memory LLMBackend; records every call."""

    def __init__(
        self,
        chat_handler: Callable[[Sequence[dict]], str] | None = None,
        responses: Sequence[str | Exception] = (),
        embed_handler: Callable[[str], list[float]] | None = None,
        stream_piece_size: int = 8,
    ):
        self.chat_handler = chat_handler
        self.responses = list(responses)
        self.embed_handler = embed_handler or bag_of_words
        self.stream_piece_size = stream_piece_size
        self.chat_calls: list[list[dict]] = []
        self.embed_calls: list[str] = []

    async def chat(self, messages, stream_sink=None) -> str:
        self.chat_calls.append(list(messages))
        if self.chat_handler is not None:
            response = self.chat_handler(messages)
        elif self.responses:
            response = self.responses.pop(0)
        else:
            response = ""

        if isinstance(response, BaseException):
            raise response

        if stream_sink is not None:
            size = self.stream_piece_size
            for start in range(0, len(response), size):
                stream_sink(response[start : start + size])
        return response

    async def embed(self, text: str) -> list[float]:
        self.embed_calls.append(text)
        result = self.embed_handler(text)
        if isinstance(result, BaseException):
            raise result
        return result


class FailingEmbedBackend(StubBackend):
    """Chat works, every embedding call fails."""

    async def embed(self, text: str) -> list[float]:
        self.embed_calls.append(text)
        raise BackendCallFailure("embedding service unavailable", operation="embed")


class InMemoryDocumentStore:
    """DocumentStore over a path -> content mapping."""

    def __init__(self, documents: dict[str, str], failing: Sequence[str] = ()):
        self.documents = dict(documents)
        self.failing = set(failing)
        self.reads: list[str] = []

    async def list_documents(self, path_prefix=None) -> list[DocumentRef]:
        return [
            DocumentRef.from_path(path)
            for path in self.documents
            if not path_prefix or path.startswith(path_prefix)
        ]

    async def read_document(self, ref: DocumentRef) -> str:
        self.reads.append(ref.path)
        if ref.path in self.failing:
            raise OSError(f"cannot read {ref.path}")
        return self.documents[ref.path]


def user_prompt(messages) -> str:
    return messages[-1]["content"]


def system_prompt(messages) -> str:
    return messages[0]["content"] if messages[0]["role"] == "system" else ""


def reset_all_global_state():
    """Reset module-level singletons touched by the tests."""
    from ragpilot.config.settings import get_settings
    from ragpilot.observability.logging import clear_trace_id
    from ragpilot.observability.probe import _METRICS_STORE

    get_settings.cache_clear()
    clear_trace_id()
    _METRICS_STORE.clear()

    modules_to_reset = [
        "ragpilot.api.server",
        "ragpilot.observability.tracing",
        "ragpilot.observability.metrics",
    ]
    global_vars_to_reset = {
        "orchestrator": None,
        "container": None,
        "_tracing_manager": None,
        "_metrics_collector": None,
    }
    for module_name in modules_to_reset:
        module = sys.modules.get(module_name)
        if module is None:
            continue
        for var_name, reset_value in global_vars_to_reset.items():
            if hasattr(module, var_name):
                setattr(module, var_name, reset_value)


@pytest.fixture(autouse=True)
def test_isolation():
    """Per-test isolation to ensure clean state for each test."""
    reset_all_global_state()
    yield
    reset_all_global_state()


@pytest.fixture
def france_store():
    return InMemoryDocumentStore({"geo/france.md": "Paris is the capital of France."})


@pytest.fixture
def notes_store():
    return InMemoryDocumentStore(
        {
            "geo/france.md": "Paris is the capital of France. The Seine flows through the city.",
            "geo/germany.md": "Berlin is the capital of Germany. Germany is in Europe.",
            "home/garden.md": "Tomato plants need rich soil. Water the garden daily.",
            "dev/python.md": "Python code should be readable. Write tests for your code.",
        }
    )
