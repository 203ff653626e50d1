"""
Configuration with Pydantic Settings.

Every tunable of the pipeline lives here: model endpoints, retrieval
thresholds, quality guards for rewriting, HyDE and reflection, timeouts,
observability and the API server. Values come from the environment with the
RAGPILOT_ prefix and "__" as the nested delimiter, e.g.

    RAGPILOT_MODELS__CHAT__NAME=llama3.1:8b
    RAGPILOT_RETRIEVAL__SIMILARITY_THRESHOLD=0.45
    RAGPILOT_REFLECTION__MAX_REFLECTIONS=1
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ModelEndpoint(BaseModel):
    """Configuration for a model endpoint."""

    name: str = Field(..., description="Model name (e.g., 'llama3.1:8b' or 'gpt-4o-mini')")
    provider: Literal["ollama", "openai"] = Field("ollama", description="Wire format")
    base_url: str = Field("http://localhost:11434", description="Base URL for the model API")
    api_key: str | None = Field(None, description="API key if required")
    timeout: float = Field(120.0, gt=0, description="HTTP timeout in seconds")
    max_retries: int = Field(3, ge=1, description="Attempts for transport failures")
    temperature: float = Field(0.2, ge=0.0, le=2.0)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v.rstrip("/")


class ModelsConfig(BaseModel):
    """Chat and embedding endpoints. A missing chat model is a configuration error."""

    chat: ModelEndpoint | None = Field(
        default_factory=lambda: ModelEndpoint(name="llama3.1:8b")
    )
    embeddings: ModelEndpoint | None = Field(
        default_factory=lambda: ModelEndpoint(name="nomic-embed-text")
    )


class RetrievalConfig(BaseModel):
    """Configuration for vector and keyword retrieval."""

    knowledge_base_path: Path = Field(Path("./notes"))
    path_prefix: str | None = Field(None, description="Restrict retrieval to this sub-path")
    document_extensions: list[str] = Field(default_factory=lambda: [".md"])
    similarity_threshold: float = Field(0.5, ge=-1.0, le=1.0)
    batch_size: int = Field(5, gt=0)
    snippet_length: int = Field(1000, gt=0)
    max_results: int = Field(5, gt=0)


class RewriteConfig(BaseModel):
    """Guards for query rewriting."""

    enabled: bool = Field(True)
    min_query_length: int = Field(10, ge=0)
    min_query_tokens: int = Field(3, ge=0)
    min_length: int = Field(3, ge=0)
    max_length: int = Field(200, gt=0)


class HyDEConfig(BaseModel):
    """Guards for hypothetical document generation."""

    enabled: bool = Field(True)
    min_length: int = Field(50, ge=0)


class ReflectionConfig(BaseModel):
    """Bounds and quality guards for the reflection loop."""

    enabled: bool = Field(True)
    max_reflections: int = Field(2, ge=0)
    min_critique_length: int = Field(50, ge=0)
    improvement_ratio: float = Field(0.5, ge=0.0)
    search_limit: int = Field(3, gt=0)


class PipelineConfig(BaseModel):
    """Per-call defaults for the orchestrator."""

    default_limit: int = Field(10, gt=0)
    default_lambda: float = Field(0.6, ge=0.0, le=1.0)
    max_chunk_size: int = Field(1000, gt=0)
    chunk_sources: bool = Field(False, description="Narrow sources to their top chunks")
    call_timeout: float | None = Field(None, gt=0, description="Budget per backend call")


class ObservabilityConfig(BaseModel):
    """Configuration for logging, metrics and tracing."""

    log_level: str = Field("INFO")
    enable_metrics: bool = Field(True)
    enable_tracing: bool = Field(False)
    console_spans: bool = Field(False)
    service_name: str = Field("ragpilot")


class APIConfig(BaseModel):
    """Configuration for the API server."""

    host: str = Field("127.0.0.1")
    port: int = Field(8000, gt=0, le=65535)
    reload: bool = Field(False)
    enable_docs: bool = Field(True)


class Settings(BaseSettings):
    """Main application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="RAGPILOT_", env_nested_delimiter="__", case_sensitive=False, extra="ignore"
    )

    models: ModelsConfig = Field(default_factory=ModelsConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    rewrite: RewriteConfig = Field(default_factory=RewriteConfig)
    hyde: HyDEConfig = Field(default_factory=HyDEConfig)
    reflection: ReflectionConfig = Field(default_factory=ReflectionConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    environment: str = Field("development")
    debug: bool = Field(False)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
