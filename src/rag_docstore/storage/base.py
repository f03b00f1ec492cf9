"""Abstract base class for vector-storage backends.

Adding a backend only requires subclassing :class:`StorageAdapter` and
implementing the abstract methods; the service layer is backend-agnostic.

Contract shared by every backend
--------------------------------
* ``create_index`` is idempotent for an existing index of the same
  dimension and fails on a dimension mismatch.
* ``delete_index`` on a missing index raises :class:`IndexDeletionError`.
* ``upsert`` takes positionally aligned ``ids`` / ``vectors`` / ``metadata``
  and overwrites by id.
* ``query`` returns results ordered by descending score, at most ``top_k``.
  Unsupported filter shapes raise rather than being ignored.
* ``delete_vector`` on an absent id is a no-op.
* ``enumerate`` returns every chunk record matching the filters, bounded by
  :data:`ENUMERATE_LIMIT`. None of the backends offers an unbounded
  "list all" primitive; the default implementation queries with a zero
  vector and a ``top_k`` of :data:`ENUMERATE_LIMIT`.

No backend deletes by metadata natively here, so removing the chunks of a
document is a query followed by per-id deletes. That sequence is not
atomic; callers re-run it to converge.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from rag_docstore.exceptions import ConfigurationError, DimensionMismatchError, VectorUpsertError
from rag_docstore.models import IndexStats, MetadataFilter, SearchResult

logger = logging.getLogger(__name__)

# Upper bound on records returned by ``enumerate``.
ENUMERATE_LIMIT = 10_000

SUPPORTED_METRICS = ("cosine", "euclidean", "dotproduct")


def check_metric(metric: str) -> str:
    if metric not in SUPPORTED_METRICS:
        raise ConfigurationError(
            f"Unsupported distance metric: {metric!r}",
            details={"metric": metric, "supported": list(SUPPORTED_METRICS)},
        )
    return metric


def check_aligned(
    index_name: str,
    ids: Sequence[str],
    vectors: Sequence[Sequence[float]],
    metadata: Sequence[dict[str, Any]],
) -> None:
    if not (len(ids) == len(vectors) == len(metadata)):
        raise VectorUpsertError(
            "ids, vectors and metadata must have the same length",
            details={
                "index_name": index_name,
                "ids": len(ids),
                "vectors": len(vectors),
                "metadata": len(metadata),
            },
        )


def check_dimension(index_name: str, vectors: Sequence[Sequence[float]], dimension: int) -> None:
    """Raise :class:`DimensionMismatchError` unless every vector has *dimension* entries."""
    for vector in vectors:
        if len(vector) != dimension:
            raise DimensionMismatchError(
                f"Vector dimension {len(vector)} does not match index {index_name!r} ({dimension})",
                details={"index_name": index_name, "expected": dimension, "actual": len(vector)},
            )


def warn_if_truncated(index_name: str, count: int, limit: int) -> None:
    if count >= limit:
        logger.warning(
            "Enumeration of index %s hit the %d record bound; results are truncated",
            index_name,
            limit,
        )


def to_search_result(record_id: str, metadata: dict[str, Any] | None, score: float | None) -> SearchResult:
    """Build a :class:`SearchResult` from a stored record.

    The chunk text lives in the ``text`` metadata field on every backend.
    """
    meta = dict(metadata or {})
    meta.setdefault("chunk_index", 0)
    meta.setdefault("start_position", 0)
    text = meta.get("text") or ""
    meta.setdefault("end_position", len(text))
    if score is None or score != score:  # NaN from zero-vector distances
        score = 0.0
    return SearchResult(id=meta.get("chunk_id") or record_id, content=text, metadata=meta, score=float(score))


class StorageAdapter(ABC):
    """Backend-agnostic vector-store interface."""

    backend: str = "abstract"

    # -- index management -----------------------------------------------------

    @abstractmethod
    async def create_index(self, name: str, dimension: int, metric: str = "cosine") -> None:
        ...

    @abstractmethod
    async def delete_index(self, name: str) -> None:
        ...

    @abstractmethod
    async def list_indexes(self) -> list[str]:
        ...

    @abstractmethod
    async def describe_index(self, name: str) -> IndexStats:
        ...

    @abstractmethod
    async def truncate_index(self, name: str) -> None:
        """Remove every vector from *name* while keeping the index."""
        ...

    # -- vectors --------------------------------------------------------------

    @abstractmethod
    async def upsert(
        self,
        index_name: str,
        ids: Sequence[str],
        vectors: Sequence[Sequence[float]],
        metadata: Sequence[dict[str, Any]],
    ) -> None:
        ...

    @abstractmethod
    async def query(
        self,
        index_name: str,
        query_vector: Sequence[float],
        *,
        top_k: int = 5,
        filters: list[MetadataFilter] | None = None,
        min_score: float | None = None,
    ) -> list[SearchResult]:
        """Return the *top_k* nearest records, highest score first.

        Each result's ``content`` is the stored chunk text and ``metadata``
        the stored payload.
        """
        ...

    @abstractmethod
    async def delete_vector(self, index_name: str, vector_id: str) -> None:
        ...

    @abstractmethod
    async def update_vector(
        self,
        index_name: str,
        vector_id: str,
        vector: Sequence[float] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        ...

    async def enumerate(self, index_name: str, filters: list[MetadataFilter] | None = None) -> list[SearchResult]:
        """Return all records matching *filters*, up to :data:`ENUMERATE_LIMIT`."""
        stats = await self.describe_index(index_name)
        results = await self.query(
            index_name,
            [0.0] * stats.dimension,
            top_k=ENUMERATE_LIMIT,
            filters=filters,
        )
        warn_if_truncated(index_name, len(results), ENUMERATE_LIMIT)
        return results

    async def close(self) -> None:
        """Release client resources. Optional."""
        return None
