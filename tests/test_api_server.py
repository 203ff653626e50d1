"""
Tests for API server endpoints.

Tests cover:
- Health check endpoint with component status
- Query processing and option mapping
- Error mapping for configuration and backend failures
- Request validation
- Application lifespan
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from ragpilot.api.server import create_app  # Don't import module-level app
from ragpilot.backends.base import DocumentRef
from ragpilot.config.settings import get_settings
from ragpilot.core.orchestrator import RAGOptions, RAGResult
from ragpilot.errors import BackendCallFailure, ConfigurationError
from ragpilot.rag.retriever import Source


@pytest.fixture
def client():
    return TestClient(create_app())


@pytest.fixture
def rag_result():
    return RAGResult(
        answer="Paris is the capital of France [Source 1].",
        sources=[
            Source(DocumentRef.from_path("geo/france.md"), 0.82, "Paris is the capital of France.")
        ],
        reflection_rounds=1,
        optimized_query="capital of France",
    )


@pytest.fixture
def mock_orchestrator(rag_result):
    orchestrator = MagicMock()
    orchestrator.run_rag = AsyncMock(return_value=rag_result)
    return orchestrator


class TestHealthEndpoint:
    def test_degraded_without_pipeline(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "degraded"
        assert data["components"]["pipeline"] == "not_initialized"
        assert data["components"]["config"] == "healthy"
        assert "version" in data
        assert data["uptime_seconds"] >= 0

    def test_healthy_with_pipeline_and_knowledge_base(
        self, client, mock_orchestrator, tmp_path, monkeypatch
    ):
        monkeypatch.setenv("RAGPILOT_RETRIEVAL__KNOWLEDGE_BASE_PATH", str(tmp_path))
        get_settings.cache_clear()

        with patch("ragpilot.api.server.orchestrator", mock_orchestrator):
            data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["components"]["knowledge_base"] == "healthy"


class TestQueryEndpoint:
    def test_not_initialized(self, client):
        response = client.post("/query", json={"query": "capital of France"})
        assert response.status_code == 503

    def test_successful_query(self, client, mock_orchestrator):
        with patch("ragpilot.api.server.orchestrator", mock_orchestrator):
            response = client.post(
                "/query", json={"query": "What is the capital of France?", "limit": 5}
            )

        assert response.status_code == 200
        data = response.json()
        assert data["answer"] == "Paris is the capital of France [Source 1]."
        assert data["sources"] == [
            {
                "path": "geo/france.md",
                "basename": "france",
                "similarity": 0.82,
                "content": "Paris is the capital of France.",
            }
        ]
        assert data["reflection_rounds"] == 1
        assert data["optimized_query"] == "capital of France"
        assert len(data["trace_id"]) == 16
        assert data["execution_time"] >= 0

    def test_options_are_mapped(self, client, mock_orchestrator):
        with patch("ragpilot.api.server.orchestrator", mock_orchestrator):
            client.post(
                "/query",
                json={"query": "capital", "limit": 3, "lambda": 0.9, "directory": "geo/"},
            )

        query, options = mock_orchestrator.run_rag.await_args.args
        assert query == "capital"
        assert isinstance(options, RAGOptions)
        assert (options.limit, options.lambda_, options.directory) == (3, 0.9, "geo/")
        assert options.streaming is False

    def test_defaults_come_from_settings(self, client, mock_orchestrator, monkeypatch):
        monkeypatch.setenv("RAGPILOT_PIPELINE__DEFAULT_LIMIT", "7")
        monkeypatch.setenv("RAGPILOT_PIPELINE__DEFAULT_LAMBDA", "0.3")
        get_settings.cache_clear()

        with patch("ragpilot.api.server.orchestrator", mock_orchestrator):
            client.post("/query", json={"query": "capital"})

        options = mock_orchestrator.run_rag.await_args.args[1]
        assert (options.limit, options.lambda_) == (7, 0.3)

    def test_lambda_zero_is_not_replaced_by_default(self, client, mock_orchestrator):
        with patch("ragpilot.api.server.orchestrator", mock_orchestrator):
            client.post("/query", json={"query": "capital", "lambda": 0.0})

        assert mock_orchestrator.run_rag.await_args.args[1].lambda_ == 0.0

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"query": ""},
            {"query": "x" * 5001},
            {"query": "capital", "limit": 0},
            {"query": "capital", "limit": 51},
            {"query": "capital", "lambda": 1.5},
        ],
    )
    def test_validation_errors(self, client, mock_orchestrator, payload):
        with patch("ragpilot.api.server.orchestrator", mock_orchestrator):
            response = client.post("/query", json=payload)

        assert response.status_code == 422
        mock_orchestrator.run_rag.assert_not_awaited()

    def test_configuration_error_is_503(self, client, mock_orchestrator):
        mock_orchestrator.run_rag.side_effect = ConfigurationError("no chat model")
        with patch("ragpilot.api.server.orchestrator", mock_orchestrator):
            response = client.post("/query", json={"query": "capital"})

        assert response.status_code == 503
        assert "no chat model" in response.json()["detail"]

    def test_backend_failure_is_502(self, client, mock_orchestrator):
        mock_orchestrator.run_rag.side_effect = BackendCallFailure("refused", operation="chat")
        with patch("ragpilot.api.server.orchestrator", mock_orchestrator):
            response = client.post("/query", json={"query": "capital"})

        assert response.status_code == 502
        assert "refused" in response.json()["detail"]

    def test_unexpected_error_is_500(self, mock_orchestrator):
        mock_orchestrator.run_rag.side_effect = RuntimeError("kaboom")
        client = TestClient(create_app(), raise_server_exceptions=False)

        with patch("ragpilot.api.server.orchestrator", mock_orchestrator):
            response = client.post("/query", json={"query": "capital"})

        assert response.status_code == 500
        assert response.json()["error"] == "Internal server error"


class TestLifespan:
    def test_startup_builds_pipeline_and_cleans_up(self, mock_orchestrator):
        container = MagicMock()
        container.get.return_value = mock_orchestrator
        container.cleanup = AsyncMock()

        with patch("ragpilot.api.server.setup_container", return_value=container):
            with TestClient(create_app()) as client:
                assert client.get("/health").json()["components"]["pipeline"] == "healthy"

        container.get.assert_called_once_with("rag_orchestrator")
        container.cleanup.assert_awaited_once()

    def test_metrics_provider_lives_with_the_app(self, mock_orchestrator):
        container = MagicMock()
        container.get.return_value = mock_orchestrator
        container.cleanup = AsyncMock()

        with patch("ragpilot.api.server.setup_container", return_value=container):
            with patch("ragpilot.api.server.setup_meter_provider") as mock_meter:
                with TestClient(create_app()):
                    mock_meter.assert_called_once_with("ragpilot")
                    mock_meter.return_value.shutdown.assert_not_called()

        mock_meter.return_value.shutdown.assert_called_once()

    def test_configuration_error_leaves_server_degraded(self):
        container = MagicMock()
        container.get.side_effect = ConfigurationError("no chat model")
        container.cleanup = AsyncMock()

        with patch("ragpilot.api.server.setup_container", return_value=container):
            with TestClient(create_app()) as client:
                assert client.post("/query", json={"query": "capital"}).status_code == 503
