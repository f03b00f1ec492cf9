"""Qdrant implementation of the storage adapter.

Qdrant point ids must be unsigned integers or UUIDs, so chunk ids are mapped
to deterministic UUIDv5 values; the original id travels in the payload as
``chunk_id`` and is what callers see.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from typing import Any

from qdrant_client import AsyncQdrantClient, models

from rag_docstore.exceptions import (
    IndexCreationError,
    IndexDeletionError,
    IndexDescribeError,
    IndexListError,
    IndexTruncateError,
    RagError,
    UnsupportedFilterError,
    VectorDeleteError,
    VectorQueryError,
    VectorUpdateError,
    VectorUpsertError,
)
from rag_docstore.models import IndexStats, MetadataFilter, SearchResult
from rag_docstore.storage.base import (
    ENUMERATE_LIMIT,
    StorageAdapter,
    check_aligned,
    check_metric,
    to_search_result,
    warn_if_truncated,
)

logger = logging.getLogger(__name__)

_DISTANCES = {
    "cosine": models.Distance.COSINE,
    "euclidean": models.Distance.EUCLID,
    "dotproduct": models.Distance.DOT,
}
_METRICS = {distance: metric for metric, distance in _DISTANCES.items()}


def point_id(record_id: str) -> str:
    """Convert any string id to a deterministic UUID."""
    return str(uuid.uuid5(uuid.NAMESPACE_DNS, record_id))


def _match(field: str, value: Any) -> models.FieldCondition:
    if isinstance(value, (str, int)):
        return models.FieldCondition(key=field, match=models.MatchValue(value=value))
    if isinstance(value, float):
        return models.FieldCondition(key=field, range=models.Range(gte=value, lte=value))
    raise UnsupportedFilterError(
        f"Filter value for {field!r} must be a scalar, got {type(value).__name__}",
        details={"field": field},
    )


def build_qdrant_filter(filters: list[MetadataFilter] | None) -> models.Filter | None:
    """Convert a list of :class:`MetadataFilter` to a Qdrant ``Filter``."""
    if not filters:
        return None

    must: list[models.Condition] = []
    must_not: list[models.Condition] = []
    for f in filters:
        if f.operator in ("eq", "contains"):
            # Qdrant matches array payloads element-wise.
            must.append(_match(f.field, f.value))
        elif f.operator == "ne":
            must_not.append(_match(f.field, f.value))
        elif f.operator == "in":
            must.append(models.FieldCondition(key=f.field, match=models.MatchAny(any=list(f.value))))
    return models.Filter(must=must or None, must_not=must_not or None)


def _vector_size(params: Any) -> tuple[int, models.Distance]:
    vectors = params.vectors
    if isinstance(vectors, dict):
        vectors = next(iter(vectors.values()))
    return vectors.size, vectors.distance


class QdrantStorageAdapter(StorageAdapter):
    """Qdrant-backed store.

    Parameters
    ----------
    url:
        Qdrant endpoint, e.g. ``http://localhost:6333``.
    api_key:
        Optional API key (Qdrant Cloud).
    client:
        Pre-built ``AsyncQdrantClient``.
    """

    backend = "qdrant"

    def __init__(self, url: str = "http://localhost:6333", *, api_key: str | None = None, client: Any = None) -> None:
        self._url = url
        self._client = client if client is not None else AsyncQdrantClient(url=url, api_key=api_key)
        self._metrics: dict[str, str] = {}

    async def _metric(self, name: str) -> str:
        if name not in self._metrics:
            info = await self._client.get_collection(name)
            _, distance = _vector_size(info.config.params)
            self._metrics[name] = _METRICS.get(distance, "cosine")
        return self._metrics[name]

    # -- index management -----------------------------------------------------

    async def create_index(self, name: str, dimension: int, metric: str = "cosine") -> None:
        check_metric(metric)
        try:
            if await self._client.collection_exists(name):
                info = await self._client.get_collection(name)
                size, _ = _vector_size(info.config.params)
                if size != dimension:
                    raise IndexCreationError(
                        f"Index {name!r} already exists with dimension {size}, requested {dimension}",
                        details={"index_name": name, "dimension": dimension, "existing_dimension": size},
                    )
                return
            await self._client.create_collection(
                collection_name=name,
                vectors_config=models.VectorParams(size=dimension, distance=_DISTANCES[metric]),
            )
            await self._client.create_payload_index(
                collection_name=name,
                field_name="document_id",
                field_schema=models.PayloadSchemaType.KEYWORD,
            )
            self._metrics[name] = metric
            logger.info("Created qdrant index %s (dimension=%d, metric=%s)", name, dimension, metric)
        except RagError:
            raise
        except Exception as exc:
            raise IndexCreationError(
                f"Failed to create index: {exc}", details={"index_name": name, "dimension": dimension}
            ) from exc

    async def delete_index(self, name: str) -> None:
        try:
            if not await self._client.collection_exists(name):
                raise IndexDeletionError(f"Index {name!r} does not exist", details={"index_name": name})
            await self._client.delete_collection(collection_name=name)
            self._metrics.pop(name, None)
        except RagError:
            raise
        except Exception as exc:
            raise IndexDeletionError(f"Failed to delete index: {exc}", details={"index_name": name}) from exc

    async def list_indexes(self) -> list[str]:
        try:
            response = await self._client.get_collections()
        except Exception as exc:
            raise IndexListError(f"Failed to list indexes: {exc}") from exc
        return [c.name for c in response.collections]

    async def describe_index(self, name: str) -> IndexStats:
        try:
            info = await self._client.get_collection(name)
        except Exception as exc:
            raise IndexDescribeError(f"Failed to describe index: {exc}", details={"index_name": name}) from exc
        size, distance = _vector_size(info.config.params)
        return IndexStats(
            name=name,
            dimension=size,
            metric=_METRICS.get(distance, "cosine"),
            count=info.points_count or 0,
        )

    async def truncate_index(self, name: str) -> None:
        try:
            await self._client.delete(
                collection_name=name,
                points_selector=models.FilterSelector(filter=models.Filter()),
                wait=True,
            )
        except Exception as exc:
            raise IndexTruncateError(f"Failed to truncate index: {exc}", details={"index_name": name}) from exc

    # -- vectors --------------------------------------------------------------

    async def upsert(
        self,
        index_name: str,
        ids: Sequence[str],
        vectors: Sequence[Sequence[float]],
        metadata: Sequence[dict[str, Any]],
    ) -> None:
        check_aligned(index_name, ids, vectors, metadata)
        if not ids:
            return
        points = [
            models.PointStruct(
                id=point_id(record_id),
                vector=list(vector),
                payload={**meta, "chunk_id": meta.get("chunk_id") or record_id},
            )
            for record_id, vector, meta in zip(ids, vectors, metadata)
        ]
        try:
            await self._client.upsert(collection_name=index_name, points=points, wait=True)
        except Exception as exc:
            raise VectorUpsertError(
                f"Failed to upsert vectors: {exc}", details={"index_name": index_name, "count": len(ids)}
            ) from exc

    async def query(
        self,
        index_name: str,
        query_vector: Sequence[float],
        *,
        top_k: int = 5,
        filters: list[MetadataFilter] | None = None,
        min_score: float | None = None,
    ) -> list[SearchResult]:
        query_filter = build_qdrant_filter(filters)
        try:
            metric = await self._metric(index_name)
            response = await self._client.query_points(
                collection_name=index_name,
                query=list(query_vector),
                limit=top_k,
                query_filter=query_filter,
                with_payload=True,
            )
        except Exception as exc:
            raise VectorQueryError(
                f"Failed to query index: {exc}", details={"index_name": index_name, "top_k": top_k}
            ) from exc

        hits: list[SearchResult] = []
        for point in response.points:
            score = point.score
            if metric == "euclidean":
                # Qdrant reports the raw distance for EUCLID.
                score = 1.0 / (1.0 + score)
            hits.append(to_search_result(str(point.id), point.payload, score))

        if min_score is not None:
            hits = [h for h in hits if h.score >= min_score]
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits

    async def enumerate(self, index_name: str, filters: list[MetadataFilter] | None = None) -> list[SearchResult]:
        """List records with ``scroll``, bounded by :data:`ENUMERATE_LIMIT`."""
        scroll_filter = build_qdrant_filter(filters)
        try:
            points, _ = await self._client.scroll(
                collection_name=index_name,
                scroll_filter=scroll_filter,
                limit=ENUMERATE_LIMIT,
                with_payload=True,
                with_vectors=False,
            )
        except Exception as exc:
            raise VectorQueryError(
                f"Failed to enumerate index: {exc}", details={"index_name": index_name}
            ) from exc
        warn_if_truncated(index_name, len(points), ENUMERATE_LIMIT)
        return [to_search_result(str(point.id), point.payload, 0.0) for point in points]

    async def delete_vector(self, index_name: str, vector_id: str) -> None:
        try:
            await self._client.delete(
                collection_name=index_name,
                points_selector=models.PointIdsList(points=[point_id(vector_id)]),
                wait=True,
            )
        except Exception as exc:
            raise VectorDeleteError(
                f"Failed to delete vector: {exc}", details={"index_name": index_name, "id": vector_id}
            ) from exc

    async def update_vector(
        self,
        index_name: str,
        vector_id: str,
        vector: Sequence[float] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if vector is None and metadata is None:
            raise VectorUpdateError(
                "Either vector or metadata is required to update a vector",
                details={"index_name": index_name, "id": vector_id},
            )
        pid = point_id(vector_id)
        try:
            if vector is not None:
                await self._client.update_vectors(
                    collection_name=index_name,
                    points=[models.PointVectors(id=pid, vector=list(vector))],
                    wait=True,
                )
            if metadata is not None:
                await self._client.set_payload(collection_name=index_name, payload=metadata, points=[pid], wait=True)
        except Exception as exc:
            raise VectorUpdateError(
                f"Failed to update vector: {exc}", details={"index_name": index_name, "id": vector_id}
            ) from exc

    async def close(self) -> None:
        await self._client.close()
