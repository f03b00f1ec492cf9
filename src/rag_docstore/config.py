"""Configuration loaded from environment / ``.env`` and the typed sections
injected into each component.

:class:`Settings` is the only place that touches the environment. It is
instantiated by the entry point and turned into the small immutable config
models below, which are passed by constructor to the service, the storage
adapter, the embedding client and the decision model.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from rag_docstore.models import ChunkingOptions, ChunkingStrategy, DuplicateCheckConfig, DuplicateStrategy

# High-confidence similarity above which add_document treats new content as
# a re-ingestion of an existing document.
REINGEST_SCORE_THRESHOLD = 0.95


class EmbeddingConfig(BaseModel):
    provider: str = "openai"
    # None picks the provider's default model.
    model: str | None = None
    api_key: str = ""
    dimensions: int | None = None
    base_url: str = ""


class StorageConfig(BaseModel):
    """Backend selection plus connection details.

    ``backend`` is one of ``chroma`` (embedded, file-based), ``pgvector``
    (PostgreSQL extension) or ``qdrant`` (dedicated vector database).
    """

    backend: str = "chroma"
    connection_url: str = "./rag-data"
    api_key: str | None = None
    max_connections: int = 10


class DecisionConfig(BaseModel):
    provider: str = "openai"
    model: str | None = None
    api_key: str = ""
    base_url: str = ""
    temperature: float = 0.0


class ServiceConfig(BaseModel):
    default_index_name: str = "documents"
    default_top_k: int = 5
    chunking: ChunkingOptions = Field(default_factory=ChunkingOptions)
    duplicate_check: DuplicateCheckConfig = Field(default_factory=DuplicateCheckConfig)
    auto_create_indexes: list[str] = Field(default_factory=list)
    index_metric: str = "cosine"
    reingest_threshold: float = REINGEST_SCORE_THRESHOLD


class Settings(BaseSettings):
    """Application settings, populated from env vars or .env file."""

    # Storage
    rag_database_type: str = Field(default="chroma", description="chroma | pgvector | qdrant")
    rag_connection_url: str = Field(
        default="./rag-data",
        description="Chroma persistence path (``file:`` prefix allowed) or PostgreSQL DSN",
    )
    rag_qdrant_url: str = "http://localhost:6333"
    qdrant_api_key: str | None = None
    pg_max_connections: int = 10
    vector_metric: str = "cosine"

    # Embedding
    embedding_provider: str = "openai"
    embedding_model: str | None = Field(default=None, description="Defaults per provider")
    embedding_api_key: str = ""
    embedding_dimensions: int | None = None
    embedding_base_url: str = ""

    # Chunking / search
    rag_chunk_size: int = 512
    rag_chunk_overlap: int = 50
    rag_chunk_strategy: ChunkingStrategy = "recursive"
    rag_top_k: int = 5
    default_index_name: str = "documents"
    auto_create_indexes: str = Field(default="", description="Comma-separated index names created at startup")

    # Duplicate detection
    duplicate_check_enabled: bool = False
    duplicate_threshold: float = 0.9
    duplicate_check_strategy: DuplicateStrategy = "semantic"
    duplicate_check_top_k: int = 10
    ai_decision_enabled: bool = True
    decision_provider: str = Field(default="", description="Defaults to the embedding provider")
    decision_model: str | None = None

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # -- typed sections -------------------------------------------------------

    def embedding_config(self) -> EmbeddingConfig:
        return EmbeddingConfig(
            provider=self.embedding_provider,
            model=self.embedding_model,
            api_key=self.embedding_api_key,
            dimensions=self.embedding_dimensions,
            base_url=self.embedding_base_url,
        )

    def storage_config(self) -> StorageConfig:
        if self.rag_database_type == "qdrant":
            return StorageConfig(
                backend="qdrant",
                connection_url=self.rag_qdrant_url,
                api_key=self.qdrant_api_key,
            )
        return StorageConfig(
            backend=self.rag_database_type,
            connection_url=self.rag_connection_url,
            max_connections=self.pg_max_connections,
        )

    def decision_config(self) -> DecisionConfig:
        return DecisionConfig(
            provider=self.decision_provider or self.embedding_provider,
            model=self.decision_model,
            api_key=self.embedding_api_key,
            base_url=self.embedding_base_url,
        )

    def chunking_defaults(self) -> ChunkingOptions:
        return ChunkingOptions(
            strategy=self.rag_chunk_strategy,
            size=self.rag_chunk_size,
            overlap=self.rag_chunk_overlap,
        )

    def duplicate_check_config(self) -> DuplicateCheckConfig:
        return DuplicateCheckConfig(
            enabled=self.duplicate_check_enabled,
            threshold=self.duplicate_threshold,
            strategy=self.duplicate_check_strategy,
            top_k=self.duplicate_check_top_k,
            ai_decision_enabled=self.ai_decision_enabled,
        )

    def service_config(self) -> ServiceConfig:
        return ServiceConfig(
            default_index_name=self.default_index_name,
            default_top_k=self.rag_top_k,
            chunking=self.chunking_defaults(),
            duplicate_check=self.duplicate_check_config(),
            auto_create_indexes=[name.strip() for name in self.auto_create_indexes.split(",") if name.strip()],
            index_metric=self.vector_metric,
        )


def configure_logging(level: str = "INFO") -> None:
    """Basic process-wide logging setup for entry points."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
