"""Storage adapter factory keyed on the configured backend tag."""

from __future__ import annotations

import logging

from rag_docstore.config import StorageConfig
from rag_docstore.exceptions import ConfigurationError
from rag_docstore.storage.base import StorageAdapter

logger = logging.getLogger(__name__)

BACKENDS = ("chroma", "pgvector", "qdrant")


def create_storage_adapter(config: StorageConfig) -> StorageAdapter:
    """Instantiate the adapter selected by ``config.backend``.

    Backend client libraries are imported lazily so that only the selected
    one has to be importable.
    """
    if not config.connection_url:
        raise ConfigurationError(
            f"A connection URL is required for the {config.backend} backend",
            details={"backend": config.backend},
        )

    if config.backend == "chroma":
        from rag_docstore.storage.chroma_store import ChromaStorageAdapter

        adapter: StorageAdapter = ChromaStorageAdapter(config.connection_url)
    elif config.backend == "pgvector":
        from rag_docstore.storage.pgvector_store import PgVectorStorageAdapter

        adapter = PgVectorStorageAdapter(config.connection_url, max_connections=config.max_connections)
    elif config.backend == "qdrant":
        from rag_docstore.storage.qdrant_store import QdrantStorageAdapter

        adapter = QdrantStorageAdapter(config.connection_url, api_key=config.api_key)
    else:
        raise ConfigurationError(
            f"Unsupported vector store type: {config.backend!r}",
            details={"backend": config.backend, "supported": list(BACKENDS)},
        )

    logger.info("Using %s storage backend", config.backend)
    return adapter
