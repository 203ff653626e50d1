"""
Protocols for the collaborators the pipeline consumes.

The pipeline never talks to a model server or the file system directly; it
only needs something that can chat and embed, and something that can list and
read documents.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol, TypedDict, runtime_checkable


class ChatMessage(TypedDict):
    """A single role/content chat message."""

    role: str
    content: str


# Receives partial completion text in the order the backend produces it
StreamSink = Callable[[str], None]


@dataclass(frozen=True)
class DocumentRef:
    """Stable handle to a corpus document."""

    path: str
    basename: str

    @classmethod
    def from_path(cls, path: str) -> "DocumentRef":
        name = path.rsplit("/", 1)[-1]
        stem = name.rsplit(".", 1)[0] if "." in name else name
        return cls(path=path, basename=stem)


@runtime_checkable
class LLMBackend(Protocol):
    """Chat completion and embedding capability."""

    async def chat(
        self, messages: Sequence[ChatMessage], stream_sink: StreamSink | None = None
    ) -> str:
        """Complete a chat. When stream_sink is given, partial text is pushed to it."""
        ...

    async def embed(self, text: str) -> list[float]:
        """Compute an embedding vector for text."""
        ...


@runtime_checkable
class DocumentStore(Protocol):
    """Document listing and reading capability."""

    async def list_documents(self, path_prefix: str | None = None) -> list[DocumentRef]:
        ...

    async def read_document(self, ref: DocumentRef) -> str:
        ...
