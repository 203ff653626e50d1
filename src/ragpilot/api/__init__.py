"""HTTP API for the RAG pipeline."""

from .server import create_app

__all__ = ["create_app"]
