"""
FastAPI server exposing the RAG pipeline.

Endpoints:
- GET /health: component status, uptime and backend call summary
- POST /query: run the pipeline for one question
- GET /docs: interactive API documentation (when enabled)

Usage:
    $ ragpilot serve --port 8000
    # or
    $ uvicorn ragpilot.api.server:app --host 127.0.0.1 --port 8000

    $ curl -X POST http://localhost:8000/query \
      -H 'Content-Type: application/json' \
      -d '{"query":"What is the capital of France?","limit":5}'
    {
      "answer": "Paris is the capital of France [Source 1].",
      "sources": [{"path": "geo/france.md", "basename": "france", ...}],
      "reflection_rounds": 0,
      "trace_id": "4f9a1c2be0d34a71",
      "execution_time": 1.84
    }

Configuration:
    - RAGPILOT_API__HOST=127.0.0.1
    - RAGPILOT_API__PORT=8000
    - RAGPILOT_API__ENABLE_DOCS=true
"""

import time
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .. import __version__
from ..config.container import Container, setup_container
from ..config.settings import get_settings
from ..core.orchestrator import RAGOptions, RAGOrchestrator
from ..errors import BackendCallFailure, ConfigurationError
from ..observability.logging import get_logger, reset_trace_id, set_trace_id
from ..observability.metrics import get_metrics_collector, setup_meter_provider
from ..observability.probe import clear_trace_metrics, get_trace_metrics

logger = get_logger(__name__)

# Global state
orchestrator: RAGOrchestrator | None = None
container: Container | None = None


def _reset_globals_for_tests() -> None:
    """Reset global state for test isolation."""
    global orchestrator, container
    orchestrator = None
    container = None


class QueryRequest(BaseModel):
    """Request model for query endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(..., min_length=1, max_length=5000, description="The question to answer")
    limit: int | None = Field(None, gt=0, le=50, description="Maximum number of sources")
    lambda_: float | None = Field(
        None, ge=0.0, le=1.0, alias="lambda", description="MMR relevance/diversity trade-off"
    )
    directory: str | None = Field(None, description="Restrict retrieval to this corpus sub-path")


class SourceModel(BaseModel):
    path: str
    basename: str
    similarity: float
    content: str


class QueryResponse(BaseModel):
    """Response model for query endpoint."""

    answer: str
    sources: list[SourceModel] = []
    reflection_rounds: int = 0
    optimized_query: str | None = None
    trace_id: str
    execution_time: float = 0.0
    stages: dict[str, float] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Response model for health endpoint."""

    status: str
    version: str
    uptime_seconds: float
    components: dict[str, str]
    backend: dict = Field(default_factory=dict)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    global container, orchestrator

    logger.info("Starting RAGPilot API server...")
    app.state.startup_time = time.time()

    observability = get_settings().observability
    meter_provider = None
    if observability.enable_metrics:
        meter_provider = setup_meter_provider(observability.service_name)

    container = setup_container()
    try:
        orchestrator = container.get("rag_orchestrator")
    except ConfigurationError as e:
        # Serve /health so the misconfiguration is visible; /query returns 503
        logger.error(f"Pipeline not available: {e}")
        orchestrator = None

    logger.info("RAGPilot API server ready", pipeline=orchestrator is not None)

    yield

    logger.info("Shutting down RAGPilot API server...")
    if container:
        await container.cleanup()
    if meter_provider:
        meter_provider.shutdown()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="RAGPilot",
        description="Retrieval-Augmented Generation over a personal notes corpus",
        version=__version__,
        docs_url="/docs" if settings.api.enable_docs else None,
        redoc_url="/redoc" if settings.api.enable_docs else None,
        lifespan=lifespan,
    )

    @app.get("/health", response_model=HealthResponse)
    async def health_check_endpoint() -> HealthResponse:
        """Health check endpoint."""
        startup_time = getattr(app.state, "startup_time", time.time())
        uptime = max(0.0, time.time() - startup_time)

        components = {"config": "healthy"}
        components["pipeline"] = "healthy" if orchestrator else "not_initialized"

        knowledge_base = get_settings().retrieval.knowledge_base_path
        components["knowledge_base"] = "healthy" if knowledge_base.is_dir() else "missing"

        return HealthResponse(
            status="healthy" if all(v == "healthy" for v in components.values()) else "degraded",
            version=__version__,
            uptime_seconds=uptime,
            components=components,
            backend=get_metrics_collector().get_summary()["backend"],
        )

    @app.post("/query", response_model=QueryResponse)
    async def process_query_endpoint(request: QueryRequest) -> QueryResponse:
        """Run the RAG pipeline for one question."""
        if orchestrator is None:
            raise HTTPException(status_code=503, detail="Pipeline not initialized")

        pipeline = get_settings().pipeline
        options = RAGOptions(
            limit=request.limit or pipeline.default_limit,
            lambda_=pipeline.default_lambda if request.lambda_ is None else request.lambda_,
            directory=request.directory,
        )

        trace_id = uuid.uuid4().hex[:16]
        token = set_trace_id(trace_id)
        start_time = time.time()
        logger.info("Processing API query", query_length=len(request.query))

        try:
            result = await orchestrator.run_rag(request.query, options)
        except ConfigurationError as e:
            raise HTTPException(status_code=503, detail=str(e)) from e
        except BackendCallFailure as e:
            logger.error("API query failed", error=str(e), operation=e.operation)
            raise HTTPException(status_code=502, detail=f"Model backend failed: {e}") from e
        finally:
            stages = {op: m["duration_ms"] for op, m in get_trace_metrics(trace_id).items()}
            clear_trace_metrics(trace_id)
            reset_trace_id(token)

        execution_time = time.time() - start_time
        logger.info(
            "API query processed",
            execution_time=execution_time,
            sources=len(result.sources),
            rounds=result.reflection_rounds,
        )

        return QueryResponse(
            answer=result.answer,
            sources=[
                SourceModel(
                    path=s.path, basename=s.basename, similarity=s.similarity, content=s.content
                )
                for s in result.sources
            ],
            reflection_rounds=result.reflection_rounds,
            optimized_query=result.optimized_query,
            trace_id=trace_id,
            execution_time=execution_time,
            stages=stages,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler_endpoint(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler."""
        logger.error(f"Unhandled API exception at {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": (
                    str(exc)
                    if get_settings().environment == "development"
                    else "An unexpected error occurred"
                ),
            },
        )

    return app


app = create_app()
