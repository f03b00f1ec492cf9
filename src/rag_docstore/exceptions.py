"""Error taxonomy for the document store.

Every error carries a stable machine-readable ``code`` plus a ``details``
dict with the offending index / document / query, so callers (and the
protocol layer sitting above this package) can report failures without
parsing messages.

Two families exist:

* :class:`ConfigurationError` and its subclasses signal a setup problem
  (unknown provider, invalid chunking options, unsupported filter shape).
  They are fatal and propagate unchanged through the service layer.
* Everything else is an operational failure of the storage, embedding or
  pipeline layers and gets wrapped into the operation-level error of the
  call that hit it.
"""

from __future__ import annotations

from typing import Any


class RagError(Exception):
    """Base class for every error raised by :mod:`rag_docstore`."""

    code: str = "RAG_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}
        if code is not None:
            self.code = code

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-friendly representation of the error."""
        return {"code": self.code, "message": self.message, "details": self.details}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


# ── configuration ──────────────────────────────────────────────────────


class ConfigurationError(RagError):
    code = "CONFIGURATION_ERROR"


class UnsupportedProviderError(ConfigurationError):
    """Embedding or decision provider not recognised, or lacking the capability."""

    code = "INVALID_EMBEDDING_PROVIDER"


class ChunkingError(ConfigurationError):
    code = "CHUNKING_ERROR"


class UnsupportedFilterError(ConfigurationError):
    code = "UNSUPPORTED_FILTER"


class DimensionMismatchError(ConfigurationError):
    """Vectors do not match the dimension the index was created with."""

    code = "DIMENSION_MISMATCH"


# ── index management ───────────────────────────────────────────────────


class IndexCreationError(RagError):
    code = "INDEX_CREATION_ERROR"


class IndexDeletionError(RagError):
    code = "INDEX_DELETION_ERROR"


class IndexListError(RagError):
    code = "INDEX_LIST_ERROR"


class IndexDescribeError(RagError):
    code = "INDEX_DESCRIBE_ERROR"


class IndexTruncateError(RagError):
    code = "INDEX_TRUNCATE_ERROR"


# ── vector operations ──────────────────────────────────────────────────


class VectorUpsertError(RagError):
    code = "VECTOR_UPSERT_ERROR"


class VectorQueryError(RagError):
    code = "VECTOR_QUERY_ERROR"


class VectorUpdateError(RagError):
    code = "VECTOR_UPDATE_ERROR"


class VectorDeleteError(RagError):
    code = "VECTOR_DELETE_ERROR"


class EmbeddingError(RagError):
    code = "EMBEDDING_ERROR"


class DecisionParseError(RagError):
    """The decision model's answer could not be read as a structured decision."""

    code = "DECISION_PARSE_ERROR"


# ── pipeline level ─────────────────────────────────────────────────────


class DocumentAddError(RagError):
    code = "DOCUMENT_ADD_ERROR"


class DocumentUpdateError(RagError):
    code = "DOCUMENT_UPDATE_ERROR"


class DocumentDeleteError(RagError):
    code = "DOCUMENT_DELETE_ERROR"


class DocumentListError(RagError):
    code = "DOCUMENT_LIST_ERROR"


class DocumentSearchError(RagError):
    code = "DOCUMENT_SEARCH_ERROR"


class DuplicateCheckAddError(RagError):
    code = "DOCUMENT_ADD_WITH_DUPLICATE_CHECK_ERROR"


class ChunkDeleteError(RagError):
    """Deleting a document's chunks stopped part-way.

    ``details["deleted"]`` lists the chunk ids already removed and
    ``details["remaining"]`` the ones still stored. Re-running the deletion
    is safe.
    """

    code = "CHUNK_DELETE_ERROR"
