"""Unit tests for the pgvector adapter: filter compilation and a scripted pool."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

import pytest
from psycopg.types.json import Jsonb

from rag_docstore.exceptions import IndexCreationError, VectorQueryError, VectorUpsertError
from rag_docstore.models import MetadataFilter
from rag_docstore.storage.pgvector_store import PgVectorStorageAdapter, build_pg_where


class _Cursor:
    def __init__(self, rows: list[tuple] | None = None) -> None:
        self._rows = rows or []
        self.batches: list[list[tuple]] = []

    async def fetchone(self) -> tuple | None:
        return self._rows[0] if self._rows else None

    async def fetchall(self) -> list[tuple]:
        return list(self._rows)

    async def executemany(self, statement: Any, rows: list[tuple]) -> None:
        self.batches.append(list(rows))

    async def __aenter__(self) -> "_Cursor":
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None


class _Connection:
    """Answers ``execute`` calls from a queue of scripted row sets."""

    def __init__(self, results: list[list[tuple]]) -> None:
        self.results = results
        self.calls: list[Any] = []
        self.cursor_obj = _Cursor()

    async def execute(self, statement: Any, params: Any = None) -> _Cursor:
        self.calls.append(params)
        return _Cursor(self.results.pop(0) if self.results else [])

    def cursor(self) -> _Cursor:
        return self.cursor_obj


class _Pool:
    def __init__(self, conn: _Connection) -> None:
        self.conn = conn

    @asynccontextmanager
    async def connection(self):  # noqa: ANN201
        yield self.conn


def _adapter(results: list[list[tuple]]) -> tuple[PgVectorStorageAdapter, _Connection]:
    conn = _Connection(results)
    return PgVectorStorageAdapter("postgresql://unused", pool=_Pool(conn)), conn


# ── build_pg_where ─────────────────────────────────────────────────────


class TestBuildPgWhere:
    def test_no_filters(self) -> None:
        _, params = build_pg_where(None)
        assert params == []

    def test_equality_uses_jsonb_containment(self) -> None:
        _, params = build_pg_where([MetadataFilter.equals("document_id", "a")])
        assert len(params) == 1
        assert isinstance(params[0], Jsonb)
        assert params[0].obj == {"document_id": "a"}

    def test_in_expands_to_one_param_per_option(self) -> None:
        _, params = build_pg_where([MetadataFilter.one_of("source", ["x", "y"])])
        assert [p.obj for p in params] == [{"source": "x"}, {"source": "y"}]

    def test_empty_in_matches_nothing(self) -> None:
        _, params = build_pg_where([MetadataFilter.one_of("source", [])])
        assert params == []

    def test_contains_wraps_value_in_list(self) -> None:
        _, params = build_pg_where([MetadataFilter.contains("tags", "ml")])
        assert params[0].obj == {"tags": ["ml"]}


# ── adapter over a scripted pool ───────────────────────────────────────


class TestPgVectorAdapter:
    @pytest.mark.asyncio
    async def test_query_orders_and_filters_by_score(self) -> None:
        rows = [
            ("b_chunk_0", {"document_id": "b", "text": "beta"}, 0.4),
            ("a_chunk_0", {"document_id": "a", "text": "alpha"}, 0.9),
        ]
        # registry bootstrap, metric lookup, then the query itself
        store, conn = _adapter([[], [(4, "cosine")], rows])

        hits = await store.query(
            "docs", [1, 0, 0, 0], top_k=3, filters=[MetadataFilter.equals("document_id", "a")], min_score=0.3
        )

        assert [h.id for h in hits] == ["a_chunk_0", "b_chunk_0"]
        assert hits[0].content == "alpha"
        vector, jsonb, limit = conn.calls[-1]
        assert vector == [1.0, 0.0, 0.0, 0.0]
        assert jsonb.obj == {"document_id": "a"}
        assert limit == 3

    @pytest.mark.asyncio
    async def test_query_min_score_drops_weak_hits(self) -> None:
        rows = [("a_chunk_0", {"text": "alpha"}, 0.9), ("b_chunk_0", {"text": "beta"}, 0.2)]
        store, _ = _adapter([[], [(4, "cosine")], rows])
        hits = await store.query("docs", [1, 0, 0, 0], min_score=0.5)
        assert [h.id for h in hits] == ["a_chunk_0"]

    @pytest.mark.asyncio
    async def test_query_unknown_index_fails(self) -> None:
        store, _ = _adapter([[], []])
        with pytest.raises(VectorQueryError):
            await store.query("ghost", [1, 0, 0, 0])

    @pytest.mark.asyncio
    async def test_create_existing_index_with_other_dimension_fails(self) -> None:
        store, _ = _adapter([[], [(4, "cosine")]])
        with pytest.raises(IndexCreationError):
            await store.create_index("docs", 8)

    @pytest.mark.asyncio
    async def test_upsert_batches_rows(self) -> None:
        store, conn = _adapter([[]])
        await store.upsert("docs", ["a_chunk_0"], [[1, 0]], [{"text": "alpha"}])

        [batch] = conn.cursor_obj.batches
        record_id, vector, metadata = batch[0]
        assert (record_id, vector) == ("a_chunk_0", [1.0, 0.0])
        assert metadata.obj == {"text": "alpha"}

    @pytest.mark.asyncio
    async def test_upsert_rejects_misaligned_input(self) -> None:
        store, _ = _adapter([])
        with pytest.raises(VectorUpsertError):
            await store.upsert("docs", ["a", "b"], [[1.0]], [{}, {}])
