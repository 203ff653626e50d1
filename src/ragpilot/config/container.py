"""
Dependency injection container for the pipeline's collaborators.

Services are registered as factories and built lazily on first access, so
importing the container never opens an HTTP client or touches the corpus.
Async resources (the HTTP client and model backend) are closed by `cleanup`.
"""

from contextlib import asynccontextmanager
from typing import Any

from ..observability.logging import get_logger
from .settings import Settings, get_settings

logger = get_logger(__name__)


class Container:
    """Dependency injection container with async lifecycle management."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._services: dict[str, Any] = {}
        self._factories: dict[str, Any] = {}
        self._singletons: dict[str, Any] = {}
        self._async_resources: dict[str, Any] = {}
        # Context managers whose __aenter__ produced the entries above
        self._entered: dict[str, Any] = {}

    def register_factory(self, name: str, factory: Any) -> None:
        """Register a factory function for a service."""
        self._factories[name] = factory

    def register_singleton(self, name: str, instance: Any) -> None:
        """Register a ready-made instance, e.g. a stub backend in tests."""
        self._singletons[name] = instance

    def get(self, name: str, default: Any = None) -> Any:
        """Get a service by name."""
        if name in self._singletons:
            return self._singletons[name]

        if name in self._services:
            return self._services[name]

        if name in self._factories:
            instance = self._factories[name](self)
            self._services[name] = instance
            return instance

        return default

    async def get_async(self, name: str, default: Any = None) -> Any:
        """Get a service, entering it first if it is an async context manager."""
        if name in self._async_resources:
            return self._async_resources[name]

        service = self.get(name, default)

        if hasattr(service, "__aenter__"):
            async_service = await service.__aenter__()
            self._async_resources[name] = async_service
            self._entered[name] = service
            return async_service

        return service

    async def cleanup(self) -> None:
        """Close every async resource the container created."""
        for name, manager in self._entered.items():
            try:
                await manager.__aexit__(None, None, None)
            except Exception as e:
                logger.warning(f"Error cleaning up {name}: {e}")

        # Services built but never entered still own connections
        for name, service in self._services.items():
            if name in self._async_resources or not hasattr(service, "aclose"):
                continue
            try:
                await service.aclose()
            except Exception as e:
                logger.warning(f"Error closing {name}: {e}")

        self._async_resources.clear()
        self._entered.clear()
        self._services.clear()

    @asynccontextmanager
    async def lifespan(self):
        """Async context manager for container lifecycle."""
        try:
            yield self
        finally:
            await self.cleanup()


def setup_container(settings: Settings | None = None) -> Container:
    """Setup container with default service factories."""
    container = Container(settings)

    def _http_client_factory(c: Container):
        import httpx

        return httpx.AsyncClient(
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=5),
        )

    def _llm_backend_factory(c: Container):
        from ..backends.http import HttpLLMBackend

        models = c.settings.models
        return HttpLLMBackend(
            chat_endpoint=models.chat,
            embedding_endpoint=models.embeddings,
            http_client=c.get("http_client"),
        )

    def _document_store_factory(c: Container):
        from ..backends.filesystem import FileSystemDocumentStore

        retrieval = c.settings.retrieval
        return FileSystemDocumentStore(
            retrieval.knowledge_base_path, extensions=retrieval.document_extensions
        )

    def _orchestrator_factory(c: Container):
        from ..core.orchestrator import RAGOrchestrator

        return RAGOrchestrator.from_settings(
            c.get("llm_backend"), c.get("document_store"), c.settings
        )

    container.register_factory("http_client", _http_client_factory)
    container.register_factory("llm_backend", _llm_backend_factory)
    container.register_factory("document_store", _document_store_factory)
    container.register_factory("rag_orchestrator", _orchestrator_factory)

    return container
