"""Model backends and document stores consumed by the pipeline."""

from .base import ChatMessage, DocumentRef, DocumentStore, LLMBackend, StreamSink
from .filesystem import FileSystemDocumentStore
from .http import HttpLLMBackend

__all__ = [
    "ChatMessage",
    "DocumentRef",
    "DocumentStore",
    "LLMBackend",
    "StreamSink",
    "FileSystemDocumentStore",
    "HttpLLMBackend",
]
