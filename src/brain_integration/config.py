"""Configuration models for the brain integration orchestrator."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from brain_integration.errors import InferenceConfigError


class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class EmbeddingConfig(_StrictModel):
    """Selects the embedding function shared by ingestion and search."""

    backend: str = Field(default="hashing", pattern="^(hashing|http)$")
    dimension: int = Field(default=4096, ge=16)
    model: str = Field(default="nomic-embed-text", min_length=1)
    base_url: str = "http://localhost:11434"
    timeout_seconds: float = Field(default=15.0, gt=0.0)


class VectorStoreConfig(_StrictModel):
    """Selects the vector backend: in-process index or external HTTP service."""

    backend: str = Field(default="memory", pattern="^(memory|http)$")
    url: str = "http://localhost:8000"
    collection: str = Field(default="financial_knowledge", min_length=1)
    timeout_seconds: float = Field(default=10.0, gt=0.0)


class GenerationConfig(_StrictModel):
    """Named generation options; rejected before submission when out of range."""

    model: str = Field(default="llama3.1:8b", min_length=1)
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1024, ge=1, le=32768)
    top_p: float = Field(default=0.9, gt=0.0, le=1.0)
    top_k: int = Field(default=40, ge=1)

    @classmethod
    def build(cls, **options: object) -> "GenerationConfig":
        """Validate options, raising the inference error taxonomy on failure."""
        try:
            return cls.model_validate(options)
        except ValidationError as exc:
            raise InferenceConfigError(str(exc)) from exc


class InferenceConfig(_StrictModel):
    """Local model-serving backend."""

    host: str = "localhost"
    port: int = Field(default=11434, ge=1, le=65535)
    scheme: str = Field(default="http", pattern="^https?$")
    timeout_seconds: float = Field(default=60.0, gt=0.0)
    probe_timeout_seconds: float = Field(default=5.0, gt=0.0)

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"


class FallbackConfig(_StrictModel):
    """Optional remote backend used when the local backend is unavailable."""

    enabled: bool = False
    model: str = Field(default="gpt-4o-mini", min_length=1)
    base_url: str | None = None
    api_key: str | None = None
    timeout_seconds: float = Field(default=60.0, gt=0.0)


class RetrievalConfig(_StrictModel):
    """Configures context retrieval and prompt budget."""

    max_retrieved_docs: int = Field(default=5, ge=1, le=100)
    context_window_chars: int = Field(default=4000, ge=200)
    similarity_threshold: float = Field(default=0.3, ge=0.0, le=1.0)


class CacheConfig(_StrictModel):
    """Configures the answer cache and which metadata keys invalidate it."""

    enabled: bool = True
    ttl_seconds: float = Field(default=600.0, gt=0.0)
    max_entries: int = Field(default=512, ge=1)
    invalidation_keys: list[str] = Field(default_factory=lambda: ["company"])


class AdmissionConfig(_StrictModel):
    """Global admission caps; requests beyond them fail fast."""

    max_concurrent_analyses: int = Field(default=3, ge=1)
    max_concurrent_scraping: int = Field(default=5, ge=1)


class ProtocolConfig(_StrictModel):
    """Real-time protocol server settings."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = Field(default=8765, ge=1, le=65535)
    heartbeat_interval_seconds: float = Field(default=30.0, gt=0.0)
    cleanup_interval_seconds: float = Field(default=60.0, gt=0.0)
    max_clients: int = Field(default=100, ge=1)
    max_pending_per_session: int = Field(default=10, ge=1)
    max_concurrent_requests: int = Field(default=50, ge=1)

    @model_validator(mode="after")
    def _cleanup_not_finer_than_heartbeat(self) -> "ProtocolConfig":
        if self.cleanup_interval_seconds < self.heartbeat_interval_seconds:
            raise ValueError("cleanup interval must be >= heartbeat interval")
        return self


class LoggingConfig(_StrictModel):
    """Logging configuration."""

    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: str | None = None
    console: bool = True


class BrainSettings(BaseSettings):
    """Top-level settings, loaded from `BRAIN_*` environment variables.

    Nested options use `__` as delimiter, e.g.
    `BRAIN_INFERENCE__HOST=gpu-box` or `BRAIN_ADMISSION__MAX_CONCURRENT_ANALYSES=5`.
    """

    model_config = SettingsConfigDict(
        env_prefix="BRAIN_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="forbid",
    )

    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    vector_store: VectorStoreConfig = Field(default_factory=VectorStoreConfig)
    inference: InferenceConfig = Field(default_factory=InferenceConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    fallback: FallbackConfig = Field(default_factory=FallbackConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    admission: AdmissionConfig = Field(default_factory=AdmissionConfig)
    protocol: ProtocolConfig = Field(default_factory=ProtocolConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
