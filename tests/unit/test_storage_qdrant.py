"""Unit tests for the Qdrant storage adapter using the client's in-memory mode."""

from __future__ import annotations

import logging

import pytest
from qdrant_client import AsyncQdrantClient, models

from rag_docstore.exceptions import IndexCreationError, IndexDeletionError, UnsupportedFilterError
from rag_docstore.models import MetadataFilter
from rag_docstore.storage.qdrant_store import QdrantStorageAdapter, build_qdrant_filter, point_id

E0 = [1.0, 0.0, 0.0, 0.0]
E1 = [0.0, 1.0, 0.0, 0.0]
MIXED = [0.8, 0.6, 0.0, 0.0]


@pytest.fixture()
def store() -> QdrantStorageAdapter:
    return QdrantStorageAdapter(client=AsyncQdrantClient(location=":memory:"))


async def _seed(store: QdrantStorageAdapter) -> None:
    await store.create_index("docs", 4)
    await store.upsert(
        "docs",
        ["a_chunk_0", "b_chunk_0", "c_chunk_0"],
        [E0, E1, MIXED],
        [
            {"document_id": "a", "text": "alpha", "tags": ["ml", "ops"]},
            {"document_id": "b", "text": "beta", "tags": ["web"]},
            {"document_id": "c", "text": "gamma", "tags": ["ml"]},
        ],
    )


class TestBuildQdrantFilter:
    def test_none(self) -> None:
        assert build_qdrant_filter(None) is None

    def test_operators(self) -> None:
        f = build_qdrant_filter(
            [
                MetadataFilter.equals("document_id", "a"),
                MetadataFilter.not_equals("category", "draft"),
                MetadataFilter.one_of("source", ["x", "y"]),
            ]
        )
        assert len(f.must) == 2
        assert len(f.must_not) == 1
        assert isinstance(f.must[1].match, models.MatchAny)

    def test_non_scalar_value_rejected(self) -> None:
        with pytest.raises(UnsupportedFilterError):
            build_qdrant_filter([MetadataFilter.equals("tags", ["a", "b"])])


def test_point_id_is_deterministic_uuid() -> None:
    assert point_id("doc_chunk_0") == point_id("doc_chunk_0")
    assert point_id("doc_chunk_0") != point_id("doc_chunk_1")
    assert len(point_id("doc_chunk_0")) == 36


class TestQdrantAdapter:
    @pytest.mark.asyncio
    async def test_index_lifecycle(self, store: QdrantStorageAdapter) -> None:
        await store.create_index("docs", 4)
        await store.create_index("docs", 4)
        assert await store.list_indexes() == ["docs"]
        assert (await store.describe_index("docs")).dimension == 4

        with pytest.raises(IndexCreationError):
            await store.create_index("docs", 8)

        await store.delete_index("docs")
        with pytest.raises(IndexDeletionError):
            await store.delete_index("docs")

    @pytest.mark.asyncio
    async def test_query_returns_original_ids(self, store: QdrantStorageAdapter) -> None:
        await _seed(store)
        hits = await store.query("docs", E0, top_k=2)
        assert [h.id for h in hits] == ["a_chunk_0", "c_chunk_0"]
        assert hits[0].score == pytest.approx(1.0, abs=1e-3)
        assert hits[0].content == "alpha"

    @pytest.mark.asyncio
    async def test_query_filters(self, store: QdrantStorageAdapter) -> None:
        await _seed(store)
        by_doc = await store.query("docs", E0, filters=[MetadataFilter.equals("document_id", "b")])
        by_tag = await store.query("docs", E0, filters=[MetadataFilter.contains("tags", "ml")])
        assert [h.id for h in by_doc] == ["b_chunk_0"]
        assert {h.id for h in by_tag} == {"a_chunk_0", "c_chunk_0"}

    @pytest.mark.asyncio
    async def test_enumerate_and_delete(self, store: QdrantStorageAdapter) -> None:
        await _seed(store)
        assert len(await store.enumerate("docs")) == 3

        await store.delete_vector("docs", "a_chunk_0")
        await store.delete_vector("docs", "a_chunk_0")

        remaining = await store.enumerate("docs")
        assert {r.id for r in remaining} == {"b_chunk_0", "c_chunk_0"}

    @pytest.mark.asyncio
    async def test_update_vector_payload(self, store: QdrantStorageAdapter) -> None:
        await _seed(store)
        await store.update_vector("docs", "b_chunk_0", metadata={"category": "z"})
        [record] = await store.enumerate("docs", [MetadataFilter.equals("category", "z")])
        assert record.id == "b_chunk_0"
        assert record.metadata["text"] == "beta"

    @pytest.mark.asyncio
    async def test_enumerate_warns_when_bound_is_hit(
        self, store: QdrantStorageAdapter, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
    ) -> None:
        await _seed(store)
        monkeypatch.setattr("rag_docstore.storage.qdrant_store.ENUMERATE_LIMIT", 2)

        with caplog.at_level(logging.WARNING, logger="rag_docstore.storage.base"):
            records = await store.enumerate("docs")

        assert len(records) == 2
        assert "results are truncated" in caplog.text
