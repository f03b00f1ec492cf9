"""Embedded, file-based Chroma implementation of the storage adapter."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Sequence
from typing import Any

import chromadb

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
    check_dimension,
    check_metric,
    to_search_result,
    warn_if_truncated,
)

logger = logging.getLogger(__name__)

# Our metric names → Chroma ``hnsw:space``.
_SPACES = {"cosine": "cosine", "euclidean": "l2", "dotproduct": "ip"}

# Metadata key listing the fields stored JSON-encoded (Chroma only keeps
# flat str/int/float/bool values).
_JSON_FIELDS_KEY = "_json_fields"


def _build_chroma_where(filters: list[MetadataFilter] | None) -> dict[str, Any] | None:
    """Convert a list of :class:`MetadataFilter` to Chroma ``where`` syntax."""
    if not filters:
        return None

    _OP_MAP = {
        "eq": "$eq",
        "ne": "$ne",
        "in": "$in",
    }

    clauses: list[dict[str, Any]] = []
    for f in filters:
        chroma_op = _OP_MAP.get(f.operator)
        if chroma_op is None:
            # List values are stored JSON-encoded, so containment cannot be
            # evaluated by Chroma.
            raise UnsupportedFilterError(
                f"Filter operator {f.operator!r} is not supported by the chroma backend",
                details={"field": f.field, "operator": f.operator},
            )
        clauses.append({f.field: {chroma_op: f.value}})

    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def _flatten_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    flat: dict[str, Any] = {}
    encoded: list[str] = []
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            flat[key] = value
        else:
            flat[key] = json.dumps(value, default=str)
            encoded.append(key)
    if encoded:
        flat[_JSON_FIELDS_KEY] = ",".join(encoded)
    return flat


def _restore_metadata(metadata: dict[str, Any] | None) -> dict[str, Any]:
    meta = dict(metadata or {})
    encoded = meta.pop(_JSON_FIELDS_KEY, "")
    for key in filter(None, encoded.split(",")):
        if isinstance(meta.get(key), str):
            try:
                meta[key] = json.loads(meta[key])
            except json.JSONDecodeError:
                logger.warning("Stored metadata field %r is not valid JSON; keeping raw value", key)
    return meta


def _merge_flat_metadata(stored: dict[str, Any] | None, updates: dict[str, Any]) -> dict[str, Any]:
    """Flatten *updates* for Chroma's key-wise metadata merge.

    ``update`` replaces the encoded-fields marker as a whole, so it is
    rebuilt from the stored marker (minus the keys being rewritten) plus the
    keys encoded now.
    """
    flat = _flatten_metadata(updates)
    previous = (stored or {}).get(_JSON_FIELDS_KEY, "")
    kept = [key for key in previous.split(",") if key and key not in flat]
    encoded = [key for key in flat.get(_JSON_FIELDS_KEY, "").split(",") if key]
    merged = kept + [key for key in encoded if key not in kept]
    if merged or previous:
        flat[_JSON_FIELDS_KEY] = ",".join(merged)
    return flat


def _distance_to_score(distance: float, metric: str) -> float:
    if metric == "euclidean":
        return 1.0 / (1.0 + distance)
    # cosine and inner-product distances are both ``1 - similarity``.
    return 1.0 - distance


class ChromaStorageAdapter(StorageAdapter):
    """Chroma-backed store persisted to a local directory.

    Parameters
    ----------
    path:
        Persistence directory; a ``file:`` prefix is accepted.
    client:
        Pre-built Chroma client (e.g. ``chromadb.EphemeralClient()``).

    The Chroma client is synchronous; every call runs in a worker thread.
    """

    backend = "chroma"

    def __init__(self, path: str = "./rag-data", *, client: Any | None = None) -> None:
        if path.startswith("file:"):
            path = path[len("file:") :]
        self._path = path
        self._client = client if client is not None else chromadb.PersistentClient(path=path)

    # -- helpers --------------------------------------------------------------

    def _collection_names(self) -> list[str]:
        return [c if isinstance(c, str) else c.name for c in self._client.list_collections()]

    def _collection(self, name: str) -> Any:
        return self._client.get_collection(name)

    @staticmethod
    def _metric_of(collection: Any) -> str:
        return (collection.metadata or {}).get("metric", "cosine")

    # -- index management -----------------------------------------------------

    async def create_index(self, name: str, dimension: int, metric: str = "cosine") -> None:
        check_metric(metric)

        def _create() -> None:
            if name in self._collection_names():
                current = (self._collection(name).metadata or {}).get("dimension")
                if current is not None and int(current) != dimension:
                    raise IndexCreationError(
                        f"Index {name!r} already exists with dimension {current}, requested {dimension}",
                        details={"index_name": name, "dimension": dimension, "existing_dimension": current},
                    )
                logger.debug("Index %s already exists", name)
                return
            self._client.create_collection(
                name=name,
                metadata={"hnsw:space": _SPACES[metric], "dimension": dimension, "metric": metric},
            )
            logger.info("Created chroma index %s (dimension=%d, metric=%s)", name, dimension, metric)

        try:
            await asyncio.to_thread(_create)
        except RagError:
            raise
        except Exception as exc:
            raise IndexCreationError(
                f"Failed to create index: {exc}", details={"index_name": name, "dimension": dimension}
            ) from exc

    async def delete_index(self, name: str) -> None:
        def _delete() -> None:
            if name not in self._collection_names():
                raise IndexDeletionError(f"Index {name!r} does not exist", details={"index_name": name})
            self._client.delete_collection(name)

        try:
            await asyncio.to_thread(_delete)
        except RagError:
            raise
        except Exception as exc:
            raise IndexDeletionError(f"Failed to delete index: {exc}", details={"index_name": name}) from exc

    async def list_indexes(self) -> list[str]:
        try:
            return await asyncio.to_thread(self._collection_names)
        except Exception as exc:
            raise IndexListError(f"Failed to list indexes: {exc}") from exc

    async def describe_index(self, name: str) -> IndexStats:
        def _describe() -> IndexStats:
            collection = self._collection(name)
            meta = collection.metadata or {}
            return IndexStats(
                name=name,
                dimension=int(meta.get("dimension", 0)),
                metric=meta.get("metric", "cosine"),
                count=collection.count(),
            )

        try:
            return await asyncio.to_thread(_describe)
        except Exception as exc:
            raise IndexDescribeError(f"Failed to describe index: {exc}", details={"index_name": name}) from exc

    async def truncate_index(self, name: str) -> None:
        def _truncate() -> None:
            collection = self._collection(name)
            ids = collection.get(include=[])["ids"]
            if ids:
                collection.delete(ids=ids)

        try:
            await asyncio.to_thread(_truncate)
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

        def _upsert() -> None:
            collection = self._collection(index_name)
            # Chroma only learns the dimension from the first insert.
            dimension = (collection.metadata or {}).get("dimension")
            if dimension is not None:
                check_dimension(index_name, vectors, int(dimension))
            collection.upsert(
                ids=list(ids),
                embeddings=[list(v) for v in vectors],
                documents=[m.get("text", "") for m in metadata],
                metadatas=[_flatten_metadata(m) for m in metadata],
            )

        try:
            await asyncio.to_thread(_upsert)
        except RagError:
            raise
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
        where = _build_chroma_where(filters)

        def _query() -> list[SearchResult]:
            collection = self._collection(index_name)
            count = collection.count()
            if count == 0:
                return []
            metric = self._metric_of(collection)
            results = collection.query(
                query_embeddings=[list(query_vector)],
                n_results=min(top_k, count),
                where=where,
                include=["metadatas", "distances"],
            )

            hits: list[SearchResult] = []
            ids = results.get("ids", [[]])[0]
            metas = (results.get("metadatas") or [[]])[0]
            distances = (results.get("distances") or [[]])[0]
            for record_id, meta, dist in zip(ids, metas, distances):
                hits.append(to_search_result(record_id, _restore_metadata(meta), _distance_to_score(dist, metric)))
            return hits

        try:
            hits = await asyncio.to_thread(_query)
        except Exception as exc:
            raise VectorQueryError(
                f"Failed to query index: {exc}", details={"index_name": index_name, "top_k": top_k}
            ) from exc

        if min_score is not None:
            hits = [h for h in hits if h.score >= min_score]
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:top_k]

    async def enumerate(self, index_name: str, filters: list[MetadataFilter] | None = None) -> list[SearchResult]:
        """List records with ``collection.get``.

        A zero vector has no direction under HNSW cosine space, so the
        zero-vector query used by other backends is replaced by Chroma's
        native listing, under the same :data:`ENUMERATE_LIMIT` bound.
        """
        where = _build_chroma_where(filters)

        def _get() -> list[SearchResult]:
            records = self._collection(index_name).get(where=where, limit=ENUMERATE_LIMIT, include=["metadatas"])
            metas = records.get("metadatas") or [None] * len(records["ids"])
            return [to_search_result(rid, _restore_metadata(meta), 0.0) for rid, meta in zip(records["ids"], metas)]

        try:
            results = await asyncio.to_thread(_get)
        except Exception as exc:
            raise VectorQueryError(
                f"Failed to enumerate index: {exc}", details={"index_name": index_name}
            ) from exc
        warn_if_truncated(index_name, len(results), ENUMERATE_LIMIT)
        return results

    async def delete_vector(self, index_name: str, vector_id: str) -> None:
        try:
            await asyncio.to_thread(lambda: self._collection(index_name).delete(ids=[vector_id]))
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

        def _update() -> None:
            kwargs: dict[str, Any] = {"ids": [vector_id]}
            if vector is not None:
                kwargs["embeddings"] = [list(vector)]
            collection = self._collection(index_name)
            if metadata is not None:
                stored = collection.get(ids=[vector_id], include=["metadatas"]).get("metadatas") or [None]
                kwargs["metadatas"] = [_merge_flat_metadata(stored[0], metadata)]
            collection.update(**kwargs)

        try:
            await asyncio.to_thread(_update)
        except Exception as exc:
            raise VectorUpdateError(
                f"Failed to update vector: {exc}", details={"index_name": index_name, "id": vector_id}
            ) from exc
