"""Shared pytest configuration and fixtures."""

from __future__ import annotations

import hashlib
import math
from collections.abc import Sequence
from typing import Any

import pytest
from langchain_core.embeddings import Embeddings

from rag_docstore.config import EmbeddingConfig, ServiceConfig
from rag_docstore.duplicates import DuplicateDetector
from rag_docstore.exceptions import IndexCreationError, IndexDeletionError, IndexDescribeError, VectorDeleteError
from rag_docstore.ingestion.embedder import EmbeddingClient
from rag_docstore.models import IndexStats, MetadataFilter, SearchResult
from rag_docstore.service import DocumentService
from rag_docstore.storage.base import StorageAdapter, check_aligned, to_search_result

DIMENSION = 32


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests requiring external services")


def unit_vector(cosine: float, dimension: int = DIMENSION) -> list[float]:
    """Unit vector whose cosine similarity with ``e0`` is *cosine*."""
    vector = [0.0] * dimension
    vector[0] = cosine
    vector[1] = math.sqrt(max(0.0, 1.0 - cosine * cosine))
    return vector


# ── Fake embeddings ─────────────────────────────────────────────────────


class FakeEmbeddings(Embeddings):
    """Deterministic embeddings: a sha256-derived direction per text.

    ``vectors`` pins specific texts to chosen vectors.
    """

    def __init__(self, vectors: dict[str, list[float]] | None = None) -> None:
        self.vectors = vectors or {}
        self.calls: list[list[str]] = []

    def _vector(self, text: str) -> list[float]:
        if text in self.vectors:
            return list(self.vectors[text])
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [(b - 127.5) / 127.5 for b in digest[:DIMENSION]]

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        return [self._vector(t) for t in texts]

    def embed_query(self, text: str) -> list[float]:
        return self._vector(text)

    async def aembed_documents(self, texts: list[str]) -> list[list[float]]:
        return self.embed_documents(texts)

    async def aembed_query(self, text: str) -> list[float]:
        return self.embed_query(text)


# ── Fake storage ────────────────────────────────────────────────────────


def _matches(metadata: dict[str, Any], filters: list[MetadataFilter] | None) -> bool:
    for f in filters or []:
        value = metadata.get(f.field)
        if f.operator == "eq" and value != f.value:
            return False
        if f.operator == "ne" and value == f.value:
            return False
        if f.operator == "in" and value not in f.value:
            return False
        if f.operator == "contains" and (not isinstance(value, list) or f.value not in value):
            return False
    return True


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return sum(x * y for x, y in zip(a, b)) / (norm_a * norm_b)


class FakeStorageAdapter(StorageAdapter):
    """In-memory cosine store following the adapter contract.

    ``fail_delete_after`` makes ``delete_vector`` raise once that many
    deletes have succeeded.
    """

    backend = "fake"

    def __init__(self, indexes: dict[str, int] | None = None, fail_delete_after: int | None = None) -> None:
        self.indexes: dict[str, dict[str, Any]] = {}
        for name, dimension in (indexes or {}).items():
            self.indexes[name] = {"dimension": dimension, "metric": "cosine", "records": {}}
        self.fail_delete_after = fail_delete_after
        self.upsert_calls = 0
        self.delete_calls = 0

    def _records(self, name: str) -> dict[str, tuple[list[float], dict[str, Any]]]:
        return self.indexes[name]["records"]

    async def create_index(self, name: str, dimension: int, metric: str = "cosine") -> None:
        if name in self.indexes:
            if self.indexes[name]["dimension"] != dimension:
                raise IndexCreationError(f"Index {name!r} dimension mismatch", details={"index_name": name})
            return
        self.indexes[name] = {"dimension": dimension, "metric": metric, "records": {}}

    async def delete_index(self, name: str) -> None:
        if name not in self.indexes:
            raise IndexDeletionError(f"Index {name!r} does not exist", details={"index_name": name})
        del self.indexes[name]

    async def list_indexes(self) -> list[str]:
        return list(self.indexes)

    async def describe_index(self, name: str) -> IndexStats:
        if name not in self.indexes:
            raise IndexDescribeError(f"Index {name!r} does not exist", details={"index_name": name})
        index = self.indexes[name]
        return IndexStats(name=name, dimension=index["dimension"], metric=index["metric"], count=len(index["records"]))

    async def truncate_index(self, name: str) -> None:
        self._records(name).clear()

    async def upsert(self, index_name, ids, vectors, metadata) -> None:  # noqa: ANN001
        check_aligned(index_name, ids, vectors, metadata)
        self.upsert_calls += 1
        records = self._records(index_name)
        for record_id, vector, meta in zip(ids, vectors, metadata):
            records[record_id] = (list(vector), dict(meta))

    async def query(self, index_name, query_vector, *, top_k=5, filters=None, min_score=None) -> list[SearchResult]:  # noqa: ANN001
        hits = [
            to_search_result(record_id, meta, _cosine(query_vector, vector))
            for record_id, (vector, meta) in self._records(index_name).items()
            if _matches(meta, filters)
        ]
        if min_score is not None:
            hits = [h for h in hits if h.score >= min_score]
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:top_k]

    async def delete_vector(self, index_name: str, vector_id: str) -> None:
        if self.fail_delete_after is not None and self.delete_calls >= self.fail_delete_after:
            raise VectorDeleteError("simulated outage", details={"id": vector_id})
        self.delete_calls += 1
        self._records(index_name).pop(vector_id, None)

    async def update_vector(self, index_name, vector_id, vector=None, metadata=None) -> None:  # noqa: ANN001
        old_vector, old_meta = self._records(index_name)[vector_id]
        self._records(index_name)[vector_id] = (
            list(vector) if vector is not None else old_vector,
            {**old_meta, **(metadata or {})},
        )


# ── Fake decision model ─────────────────────────────────────────────────


class FakeGenerator:
    """Scripted :class:`TextGenerator`; raises *error* when given."""

    def __init__(self, response: str = "", error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.response


# ── Fixtures ────────────────────────────────────────────────────────────


@pytest.fixture()
def fake_embeddings() -> FakeEmbeddings:
    return FakeEmbeddings()


@pytest.fixture()
def embedder(fake_embeddings: FakeEmbeddings) -> EmbeddingClient:
    return EmbeddingClient(EmbeddingConfig(provider="openai", dimensions=DIMENSION), embeddings=fake_embeddings)


@pytest.fixture()
def storage() -> FakeStorageAdapter:
    return FakeStorageAdapter(indexes={"documents": DIMENSION})


@pytest.fixture()
def make_service(embedder: EmbeddingClient, storage: FakeStorageAdapter):
    """Factory building a :class:`DocumentService` over the fakes."""

    def _make(generator: FakeGenerator | None = None, **config: Any) -> DocumentService:
        return DocumentService(
            storage=storage,
            embedder=embedder,
            detector=DuplicateDetector(generator),
            config=ServiceConfig(**config),
        )

    return _make


@pytest.fixture()
def service(make_service) -> DocumentService:  # noqa: ANN001
    return make_service()


@pytest.fixture()
def make_generator():
    """Factory for scripted decision models."""
    return FakeGenerator


@pytest.fixture()
def make_storage():
    """Factory for in-memory stores with custom failure behaviour."""
    return FakeStorageAdapter


@pytest.fixture()
def unit():
    """``unit(c)`` → vector with cosine *c* against ``unit(1.0)``."""
    return unit_vector
