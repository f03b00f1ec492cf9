"""
Storage: vector persistence behind one adapter contract.

Public surface
--------------
- :class:`StorageAdapter`: abstract backend contract.
- :class:`ChromaStorageAdapter`: embedded, file-based Chroma backend.
- :class:`PgVectorStorageAdapter`: PostgreSQL + pgvector backend.
- :class:`QdrantStorageAdapter`: Qdrant backend.
- :func:`create_storage_adapter`: factory keyed on the backend tag.
"""

from rag_docstore.storage.base import ENUMERATE_LIMIT, StorageAdapter
from rag_docstore.storage.factory import create_storage_adapter

__all__ = [
    "ENUMERATE_LIMIT",
    "ChromaStorageAdapter",
    "PgVectorStorageAdapter",
    "QdrantStorageAdapter",
    "StorageAdapter",
    "create_storage_adapter",
]

_LAZY = {
    "ChromaStorageAdapter": "rag_docstore.storage.chroma_store",
    "PgVectorStorageAdapter": "rag_docstore.storage.pgvector_store",
    "QdrantStorageAdapter": "rag_docstore.storage.qdrant_store",
}


def __getattr__(name: str):  # noqa: ANN001
    """Lazy-import backends to avoid pulling in every client library at import time."""
    if name in _LAZY:
        import importlib

        return getattr(importlib.import_module(_LAZY[name]), name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
