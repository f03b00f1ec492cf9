"""PostgreSQL + pgvector implementation of the storage adapter.

Layout: each index is a table ``(id text primary key, embedding vector(d),
metadata jsonb)``; the registry table :data:`REGISTRY_TABLE` records each
index's dimension and metric.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from pgvector.psycopg import register_vector_async
from psycopg import sql
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from rag_docstore.exceptions import (
    IndexCreationError,
    IndexDeletionError,
    IndexDescribeError,
    IndexListError,
    IndexTruncateError,
    RagError,
    VectorDeleteError,
    VectorQueryError,
    VectorUpdateError,
    VectorUpsertError,
)
from rag_docstore.models import IndexStats, MetadataFilter, SearchResult
from rag_docstore.storage.base import StorageAdapter, check_aligned, check_metric, to_search_result

logger = logging.getLogger(__name__)

REGISTRY_TABLE = "rag_docstore_indexes"

# metric → (distance operator, score expression over the distance ``d``)
_OPERATORS = {
    "cosine": ("<=>", "1 - d"),
    "euclidean": ("<->", "1 / (1 + d)"),
    # ``<#>`` returns the negated inner product.
    "dotproduct": ("<#>", "-d"),
}


async def _configure_connection(conn: Any) -> None:
    """Pool hook: make sure the extension exists, then register its types."""
    await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
    await conn.commit()
    await register_vector_async(conn)


def build_pg_where(filters: list[MetadataFilter] | None) -> tuple[sql.Composable, list[Any]]:
    """Compile filters into a JSONB-containment ``WHERE`` clause and params."""
    if not filters:
        return sql.SQL(""), []

    clauses: list[sql.Composable] = []
    params: list[Any] = []
    for f in filters:
        if f.operator == "eq":
            clauses.append(sql.SQL("metadata @> %s"))
            params.append(Jsonb({f.field: f.value}))
        elif f.operator == "ne":
            clauses.append(sql.SQL("NOT (metadata @> %s)"))
            params.append(Jsonb({f.field: f.value}))
        elif f.operator == "in":
            if not f.value:
                clauses.append(sql.SQL("FALSE"))
                continue
            options = sql.SQL(" OR ").join(sql.SQL("metadata @> %s") for _ in f.value)
            clauses.append(sql.SQL("({})").format(options))
            params.extend(Jsonb({f.field: v}) for v in f.value)
        elif f.operator == "contains":
            clauses.append(sql.SQL("metadata @> %s"))
            params.append(Jsonb({f.field: [f.value]}))
    return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses), params


class PgVectorStorageAdapter(StorageAdapter):
    """pgvector-backed store.

    Parameters
    ----------
    connection_string:
        libpq connection string / URL.
    max_connections:
        Upper bound of the connection pool.
    pool:
        Pre-built ``AsyncConnectionPool`` (tests, shared pools).
    """

    backend = "pgvector"

    def __init__(
        self,
        connection_string: str,
        *,
        max_connections: int = 10,
        pool: AsyncConnectionPool | None = None,
    ) -> None:
        self._connection_string = connection_string
        self._pool = pool or AsyncConnectionPool(
            connection_string,
            max_size=max_connections,
            configure=_configure_connection,
            open=False,
        )
        self._opened = pool is not None
        self._registry_ready = False
        self._metrics: dict[str, str] = {}

    async def _ready(self) -> AsyncConnectionPool:
        if not self._opened:
            await self._pool.open()
            self._opened = True
        if not self._registry_ready:
            async with self._pool.connection() as conn:
                await conn.execute(
                    sql.SQL(
                        "CREATE TABLE IF NOT EXISTS {} ("
                        "name text PRIMARY KEY, dimension integer NOT NULL, metric text NOT NULL)"
                    ).format(sql.Identifier(REGISTRY_TABLE))
                )
            self._registry_ready = True
        return self._pool

    async def _registered(self, conn: Any, name: str) -> tuple[int, str] | None:
        cur = await conn.execute(
            sql.SQL("SELECT dimension, metric FROM {} WHERE name = %s").format(sql.Identifier(REGISTRY_TABLE)),
            (name,),
        )
        row = await cur.fetchone()
        return (row[0], row[1]) if row else None

    async def _metric(self, conn: Any, name: str) -> str:
        if name not in self._metrics:
            registered = await self._registered(conn, name)
            if registered is None:
                raise LookupError(f"Index {name!r} does not exist")
            self._metrics[name] = registered[1]
        return self._metrics[name]

    # -- index management -----------------------------------------------------

    async def create_index(self, name: str, dimension: int, metric: str = "cosine") -> None:
        check_metric(metric)
        try:
            pool = await self._ready()
            async with pool.connection() as conn:
                registered = await self._registered(conn, name)
                if registered is not None:
                    if registered[0] != dimension:
                        raise IndexCreationError(
                            f"Index {name!r} already exists with dimension {registered[0]}, requested {dimension}",
                            details={"index_name": name, "dimension": dimension, "existing_dimension": registered[0]},
                        )
                    return
                await conn.execute(
                    sql.SQL(
                        "CREATE TABLE IF NOT EXISTS {} ("
                        "id text PRIMARY KEY, embedding vector({}) NOT NULL, metadata jsonb NOT NULL DEFAULT '{{}}')"
                    ).format(sql.Identifier(name), sql.Literal(dimension))
                )
                await conn.execute(
                    sql.SQL("CREATE INDEX IF NOT EXISTS {} ON {} USING gin (metadata)").format(
                        sql.Identifier(f"{name}_metadata_idx"), sql.Identifier(name)
                    )
                )
                await conn.execute(
                    sql.SQL("INSERT INTO {} (name, dimension, metric) VALUES (%s, %s, %s)").format(
                        sql.Identifier(REGISTRY_TABLE)
                    ),
                    (name, dimension, metric),
                )
            self._metrics[name] = metric
            logger.info("Created pgvector index %s (dimension=%d, metric=%s)", name, dimension, metric)
        except RagError:
            raise
        except Exception as exc:
            raise IndexCreationError(
                f"Failed to create index: {exc}", details={"index_name": name, "dimension": dimension}
            ) from exc

    async def delete_index(self, name: str) -> None:
        try:
            pool = await self._ready()
            async with pool.connection() as conn:
                if await self._registered(conn, name) is None:
                    raise IndexDeletionError(f"Index {name!r} does not exist", details={"index_name": name})
                await conn.execute(sql.SQL("DROP TABLE IF EXISTS {}").format(sql.Identifier(name)))
                await conn.execute(
                    sql.SQL("DELETE FROM {} WHERE name = %s").format(sql.Identifier(REGISTRY_TABLE)), (name,)
                )
            self._metrics.pop(name, None)
        except RagError:
            raise
        except Exception as exc:
            raise IndexDeletionError(f"Failed to delete index: {exc}", details={"index_name": name}) from exc

    async def list_indexes(self) -> list[str]:
        try:
            pool = await self._ready()
            async with pool.connection() as conn:
                cur = await conn.execute(
                    sql.SQL("SELECT name FROM {} ORDER BY name").format(sql.Identifier(REGISTRY_TABLE))
                )
                return [row[0] for row in await cur.fetchall()]
        except Exception as exc:
            raise IndexListError(f"Failed to list indexes: {exc}") from exc

    async def describe_index(self, name: str) -> IndexStats:
        try:
            pool = await self._ready()
            async with pool.connection() as conn:
                registered = await self._registered(conn, name)
                if registered is None:
                    raise IndexDescribeError(f"Index {name!r} does not exist", details={"index_name": name})
                cur = await conn.execute(sql.SQL("SELECT count(*) FROM {}").format(sql.Identifier(name)))
                row = await cur.fetchone()
            return IndexStats(name=name, dimension=registered[0], metric=registered[1], count=row[0])
        except RagError:
            raise
        except Exception as exc:
            raise IndexDescribeError(f"Failed to describe index: {exc}", details={"index_name": name}) from exc

    async def truncate_index(self, name: str) -> None:
        try:
            pool = await self._ready()
            async with pool.connection() as conn:
                await conn.execute(sql.SQL("TRUNCATE {}").format(sql.Identifier(name)))
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
        statement = sql.SQL(
            "INSERT INTO {} (id, embedding, metadata) VALUES (%s, %s::vector, %s) "
            "ON CONFLICT (id) DO UPDATE SET embedding = EXCLUDED.embedding, metadata = EXCLUDED.metadata"
        ).format(sql.Identifier(index_name))
        try:
            pool = await self._ready()
            async with pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.executemany(
                        statement,
                        [(i, _as_floats(v), Jsonb(m)) for i, v, m in zip(ids, vectors, metadata)],
                    )
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
        where, params = build_pg_where(filters)
        try:
            pool = await self._ready()
            async with pool.connection() as conn:
                metric = await self._metric(conn, index_name)
                operator, score_expr = _OPERATORS[metric]
                statement = sql.SQL(
                    "SELECT id, metadata, {score} AS score FROM ("
                    "SELECT id, metadata, embedding {op} %s::vector AS d FROM {table}{where}"
                    ") AS ranked ORDER BY d ASC LIMIT %s"
                ).format(
                    score=sql.SQL(score_expr),
                    op=sql.SQL(operator),
                    table=sql.Identifier(index_name),
                    where=where,
                )
                cur = await conn.execute(statement, [_as_floats(query_vector), *params, top_k])
                rows = await cur.fetchall()
        except Exception as exc:
            raise VectorQueryError(
                f"Failed to query index: {exc}", details={"index_name": index_name, "top_k": top_k}
            ) from exc

        hits = [to_search_result(row[0], row[1], row[2]) for row in rows]
        if min_score is not None:
            hits = [h for h in hits if h.score >= min_score]
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits

    async def delete_vector(self, index_name: str, vector_id: str) -> None:
        try:
            pool = await self._ready()
            async with pool.connection() as conn:
                await conn.execute(
                    sql.SQL("DELETE FROM {} WHERE id = %s").format(sql.Identifier(index_name)), (vector_id,)
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
        assignments: list[sql.Composable] = []
        params: list[Any] = []
        if vector is not None:
            assignments.append(sql.SQL("embedding = %s::vector"))
            params.append(_as_floats(vector))
        if metadata is not None:
            assignments.append(sql.SQL("metadata = metadata || %s"))
            params.append(Jsonb(metadata))
        params.append(vector_id)
        try:
            pool = await self._ready()
            async with pool.connection() as conn:
                await conn.execute(
                    sql.SQL("UPDATE {} SET {} WHERE id = %s").format(
                        sql.Identifier(index_name), sql.SQL(", ").join(assignments)
                    ),
                    params,
                )
        except Exception as exc:
            raise VectorUpdateError(
                f"Failed to update vector: {exc}", details={"index_name": index_name, "id": vector_id}
            ) from exc

    async def close(self) -> None:
        if self._opened:
            await self._pool.close()
            self._opened = False


def _as_floats(vector: Sequence[float]) -> list[float]:
    return [float(x) for x in vector]
