"""Ingestion orchestrator: add / update / delete / search / list documents.

Every ingestion request runs sequentially: chunk the content, embed all
chunks in one provider call, upsert the chunk vectors tagged with the
owning ``document_id``. A document is never stored as a single record; its
chunks are replaced as a unit on update (delete then recreate) and removed
together on delete.

Consistency
-----------
Chunk deletion is an enumerate followed by per-id deletes, and the upsert
of a document's new chunks is a separate call. Neither step is rolled back
when a later one fails: a failed update can leave the document with no
chunks, and a failed deletion raises :class:`ChunkDeleteError` listing what
is left. Deletion is idempotent, so re-running it converges. Concurrent
updates of the same document id are not serialised.

Errors
------
Configuration errors propagate unchanged. Every other failure is wrapped
into the operation's error (``DocumentAddError``, ``DocumentUpdateError``,
...) with the original exception chained as ``__cause__``.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from rag_docstore.aggregator import aggregate_documents, paginate
from rag_docstore.config import ServiceConfig, Settings, configure_logging
from rag_docstore.duplicates import ChatModelGenerator, DuplicateDetector, get_chat_model
from rag_docstore.exceptions import (
    ChunkDeleteError,
    ConfigurationError,
    DocumentAddError,
    DocumentDeleteError,
    DocumentListError,
    DocumentSearchError,
    DocumentUpdateError,
    DuplicateCheckAddError,
    VectorQueryError,
)
from rag_docstore.ingestion.chunker import Chunker
from rag_docstore.ingestion.embedder import EmbeddingClient
from rag_docstore.models import (
    AddDocumentResult,
    Chunk,
    ChunkingOptions,
    Document,
    DocumentPage,
    DuplicateCheckConfig,
    DuplicateCheckResult,
    IndexStats,
    MetadataFilter,
    SearchOptions,
    SearchResult,
    normalize_filters,
    utcnow,
)
from rag_docstore.storage import StorageAdapter, create_storage_adapter
from rag_docstore.storage.base import check_dimension

logger = logging.getLogger(__name__)

DEFAULT_SOURCE = "manual_input"
# Characters of new content embedded for the duplicate-check probe.
DUPLICATE_PROBE_CHARS = 1000


class DocumentService:
    """Document ingestion and retrieval over one storage backend.

    Parameters
    ----------
    storage:
        Vector store holding the chunk vectors.
    embedder:
        Embedding client; its ``dimension`` sizes new indexes.
    chunker:
        Splits document content into chunks.
    detector:
        Near-duplicate detector used by
        :meth:`add_document_with_duplicate_check`.
    config:
        Defaults for index name, top-k, chunking and duplicate checks.
    """

    def __init__(
        self,
        storage: StorageAdapter,
        embedder: EmbeddingClient,
        chunker: Chunker | None = None,
        detector: DuplicateDetector | None = None,
        config: ServiceConfig | None = None,
    ) -> None:
        self.storage = storage
        self.embedder = embedder
        self.chunker = chunker or Chunker()
        self.detector = detector or DuplicateDetector()
        self.config = config or ServiceConfig()

    def _index(self, index_name: str | None) -> str:
        return index_name or self.config.default_index_name

    # -- index management -----------------------------------------------------

    async def create_index(self, name: str, dimension: int | None = None, metric: str | None = None) -> None:
        await self.storage.create_index(name, dimension or self.embedder.dimension, metric or self.config.index_metric)

    async def delete_index(self, name: str) -> None:
        await self.storage.delete_index(name)

    async def list_indexes(self) -> list[str]:
        return await self.storage.list_indexes()

    async def describe_index(self, name: str) -> IndexStats:
        return await self.storage.describe_index(name)

    async def ensure_indexes(self) -> list[str]:
        """Create the configured ``auto_create_indexes``; returns their names."""
        for name in self.config.auto_create_indexes:
            await self.create_index(name)
            logger.info("Index %s ready", name)
        return list(self.config.auto_create_indexes)

    # -- internals ------------------------------------------------------------

    async def _write_chunks(
        self,
        index_name: str,
        document: Document,
        chunks: list[Chunk],
        vectors: list[list[float]] | None = None,
    ) -> None:
        if not chunks:
            return
        if vectors is None or len(vectors) != len(chunks):
            vectors = await self.embedder.embed_batch([chunk.content for chunk in chunks])
        stats = await self.storage.describe_index(index_name)
        check_dimension(index_name, vectors, stats.dimension)
        records = [
            {
                **chunk.metadata,
                "text": chunk.content,
                "document_id": document.id,
                "chunk_id": chunk.id,
                "embedding_index": i,
            }
            for i, chunk in enumerate(chunks)
        ]
        await self.storage.upsert(index_name, [chunk.id for chunk in chunks], vectors, records)
        logger.info("Stored %d chunk(s) for document %s in %s", len(chunks), document.id, index_name)

    async def _chunks_of(self, document_id: str, index_name: str) -> list[SearchResult]:
        return await self.storage.enumerate(index_name, [MetadataFilter.equals("document_id", document_id)])

    async def _delete_document_chunks(
        self,
        document_id: str,
        index_name: str,
        records: list[SearchResult] | None = None,
    ) -> list[str]:
        """Delete every chunk of *document_id*; returns the deleted chunk ids.

        Not atomic: on failure :class:`ChunkDeleteError` reports the ids
        already ``deleted`` and those ``remaining``.
        """
        if records is None:
            records = await self._chunks_of(document_id, index_name)
        ids = [record.id for record in records]
        deleted: list[str] = []
        for chunk_id in ids:
            try:
                await self.storage.delete_vector(index_name, chunk_id)
            except Exception as exc:
                remaining = ids[len(deleted) :]
                logger.warning(
                    "Chunk deletion for document %s stopped after %d of %d chunk(s)",
                    document_id,
                    len(deleted),
                    len(ids),
                )
                raise ChunkDeleteError(
                    f"Failed to delete chunks of document {document_id}: {exc}",
                    details={
                        "document_id": document_id,
                        "index_name": index_name,
                        "deleted": deleted,
                        "remaining": remaining,
                    },
                ) from exc
            deleted.append(chunk_id)
        if deleted:
            logger.debug("Deleted %d chunk(s) of document %s", len(deleted), document_id)
        return deleted

    async def _find_existing(self, index_name: str, vector: list[float]) -> str | None:
        """Return the id of a stored document scoring above the re-ingest threshold."""
        try:
            hits = await self.storage.query(index_name, vector, top_k=1)
        except VectorQueryError:
            logger.warning("Re-ingestion probe failed on %s; treating content as new", index_name, exc_info=True)
            return None
        if hits and hits[0].score > self.config.reingest_threshold:
            return hits[0].document_id
        return None

    async def _add(
        self,
        content: str,
        metadata: dict[str, Any] | None,
        chunking: ChunkingOptions | dict[str, Any] | None,
        index_name: str,
        document_id: str | None,
    ) -> tuple[Document, bool]:
        options = self.config.chunking.merged(chunking)
        now = utcnow()
        meta = dict(metadata or {})
        meta["source"] = meta.get("source") or DEFAULT_SOURCE
        meta["created_at"] = now.isoformat()
        meta["updated_at"] = now.isoformat()
        document = Document(
            id=document_id or str(uuid.uuid4()),
            content=content,
            metadata=meta,
            created_at=now,
            updated_at=now,
        )

        chunks = self.chunker.chunk(document, options)
        if not chunks:
            logger.info("Document %s has no content to index; nothing stored", document.id)
            return document, False

        vectors = await self.embedder.embed_batch([chunk.content for chunk in chunks])

        existing_id = await self._find_existing(index_name, vectors[0])
        if existing_id is not None:
            logger.info("Content matches stored document %s; updating it instead of adding", existing_id)
            updated = await self._update(existing_id, content, metadata, options, index_name, vectors=vectors)
            return updated, True

        await self._write_chunks(index_name, document, chunks, vectors)
        document.chunk_count = len(chunks)
        return document, False

    async def _update(
        self,
        document_id: str,
        content: str | None,
        metadata: dict[str, Any] | None,
        options: ChunkingOptions,
        index_name: str,
        vectors: list[list[float]] | None = None,
    ) -> Document:
        records = await self._chunks_of(document_id, index_name)
        previous = aggregate_documents(records)
        await self._delete_document_chunks(document_id, index_name, records)

        now = utcnow()
        created_at = previous[0].created_at if previous else now
        meta = {**(previous[0].metadata if previous else {}), **(metadata or {})}
        meta["source"] = meta.get("source") or DEFAULT_SOURCE
        meta["created_at"] = created_at.isoformat()
        meta["updated_at"] = now.isoformat()
        document = Document(
            id=document_id,
            content=content or "",
            metadata=meta,
            created_at=created_at,
            updated_at=now,
        )

        if content:
            chunks = self.chunker.chunk(document, options)
            await self._write_chunks(index_name, document, chunks, vectors)
            document.chunk_count = len(chunks)
        logger.info("Updated document %s (%d chunk(s))", document_id, document.chunk_count)
        return document

    # -- documents ------------------------------------------------------------

    async def add_document(
        self,
        content: str,
        metadata: dict[str, Any] | None = None,
        chunking: ChunkingOptions | dict[str, Any] | None = None,
        index_name: str | None = None,
        document_id: str | None = None,
    ) -> Document:
        """Chunk, embed and store *content* as a new document.

        Content whose first chunk scores above the re-ingest threshold
        against a stored document updates that document instead. Empty
        content stores nothing and returns a document with no chunks.
        """
        index = self._index(index_name)
        try:
            document, _ = await self._add(content, metadata, chunking, index, document_id)
        except ConfigurationError:
            raise
        except Exception as exc:
            raise DocumentAddError(
                f"Failed to add document: {exc}",
                details={"index_name": index, "document_id": document_id, "metadata": metadata or {}},
            ) from exc
        return document

    async def update_document(
        self,
        document_id: str,
        content: str | None = None,
        metadata: dict[str, Any] | None = None,
        chunking: ChunkingOptions | dict[str, Any] | None = None,
        index_name: str | None = None,
    ) -> Document:
        """Replace the chunks of *document_id*.

        *metadata* is merged over the stored document metadata. Without
        *content* the old chunks are deleted and none are recreated.
        """
        index = self._index(index_name)
        try:
            options = self.config.chunking.merged(chunking)
            return await self._update(document_id, content, metadata, options, index)
        except ConfigurationError:
            raise
        except Exception as exc:
            raise DocumentUpdateError(
                f"Failed to update document: {exc}",
                details={"index_name": index, "document_id": document_id},
            ) from exc

    async def delete_document(self, document_id: str, index_name: str | None = None) -> None:
        """Delete every chunk of *document_id*. Deleting twice is not an error."""
        index = self._index(index_name)
        try:
            await self._delete_document_chunks(document_id, index)
        except ConfigurationError:
            raise
        except Exception as exc:
            raise DocumentDeleteError(
                f"Failed to delete document: {exc}",
                details={"index_name": index, "document_id": document_id},
            ) from exc
        logger.info("Deleted document %s from %s", document_id, index)

    async def add_document_with_duplicate_check(
        self,
        content: str,
        metadata: dict[str, Any] | None = None,
        chunking: ChunkingOptions | dict[str, Any] | None = None,
        index_name: str | None = None,
        duplicate_check: DuplicateCheckConfig | None = None,
    ) -> AddDocumentResult:
        """Add *content* after resolving near-duplicates.

        ``skip`` stores nothing and returns a placeholder document flagged
        ``skipped``; ``update`` replaces the chunks of the decision's target
        document; ``add`` (and ``update`` without a target) adds normally.
        """
        index = self._index(index_name)
        check_config = duplicate_check or self.config.duplicate_check
        try:
            return await self._add_with_duplicate_check(content, metadata, chunking, index, check_config)
        except ConfigurationError:
            raise
        except Exception as exc:
            raise DuplicateCheckAddError(
                f"Failed to add document with duplicate check: {exc}",
                details={
                    "index_name": index,
                    "metadata": metadata or {},
                    "duplicate_check_enabled": check_config.enabled,
                },
            ) from exc

    async def _add_with_duplicate_check(
        self,
        content: str,
        metadata: dict[str, Any] | None,
        chunking: ChunkingOptions | dict[str, Any] | None,
        index_name: str,
        check_config: DuplicateCheckConfig,
    ) -> AddDocumentResult:
        result: DuplicateCheckResult | None = None
        if check_config.enabled and content.strip():
            probe = await self.embedder.embed_one(content[:DUPLICATE_PROBE_CHARS])
            neighbors = await self.storage.query(index_name, probe, top_k=check_config.top_k)
            result = await self.detector.check(content, metadata or {}, neighbors, check_config)

        decision = result.decision if result is not None and result.is_duplicate else None
        if decision is not None and decision.action == "skip":
            logger.info("Skipping document: %s", decision.reason)
            return AddDocumentResult(
                document=self._skipped_document(content, metadata),
                duplicate_check=result,
                action="skipped",
                message=f"Skipped adding the document. Reason: {decision.reason}",
            )

        if decision is not None and decision.action == "update":
            if decision.target_document_id:
                options = self.config.chunking.merged(chunking)
                document = await self._update(decision.target_document_id, content, metadata, options, index_name)
                return AddDocumentResult(
                    document=document,
                    duplicate_check=result,
                    action="updated",
                    message=f"Updated existing document. Reason: {decision.reason}",
                )
            logger.warning("Decision was 'update' without a target document id; adding as a new document")

        document, redirected = await self._add(content, metadata, chunking, index_name, None)
        if redirected:
            return AddDocumentResult(
                document=document,
                duplicate_check=result,
                action="updated",
                message="Content matched a stored document, which was updated.",
            )
        if result is not None and result.is_duplicate:
            reason = decision.reason if decision is not None else "added despite similar documents"
            message = f"Similar documents were found but the document was added. Reason: {reason}"
        else:
            message = "Added a new document."
        return AddDocumentResult(document=document, duplicate_check=result, action="added", message=message)

    @staticmethod
    def _skipped_document(content: str, metadata: dict[str, Any] | None) -> Document:
        now = utcnow()
        meta = dict(metadata or {})
        meta["source"] = meta.get("source") or DEFAULT_SOURCE
        meta["created_at"] = now.isoformat()
        meta["skipped"] = True
        return Document(id=f"skipped-{uuid.uuid4()}", content=content, metadata=meta, created_at=now, updated_at=now)

    # -- reads ----------------------------------------------------------------

    async def search_documents(
        self,
        query: str,
        index_name: str | None = None,
        options: SearchOptions | dict[str, Any] | None = None,
    ) -> list[SearchResult]:
        """Return the chunks most similar to *query*, highest score first."""
        index = self._index(index_name)
        try:
            if options is None:
                options = SearchOptions(top_k=self.config.default_top_k)
            elif isinstance(options, dict):
                options = SearchOptions(**options)
            vector = await self.embedder.embed_one(query)
            results = await self.storage.query(
                index,
                vector,
                top_k=options.top_k,
                filters=options.filter,
                min_score=options.min_score,
            )
        except ConfigurationError:
            raise
        except Exception as exc:
            raise DocumentSearchError(
                f"Failed to search documents: {exc}",
                details={
                    "index_name": index,
                    "query": query,
                    "options": options.model_dump() if isinstance(options, SearchOptions) else options,
                },
            ) from exc
        if not options.include_metadata:
            results = [result.model_copy(update={"metadata": {}}) for result in results]
        return results

    async def list_documents(
        self,
        index_name: str | None = None,
        limit: int = 20,
        offset: int = 0,
        filter: list[MetadataFilter] | dict[str, Any] | None = None,
    ) -> DocumentPage:
        """Page through the documents of an index, newest first.

        Aggregates the whole chunk population (bounded by
        :data:`~rag_docstore.storage.ENUMERATE_LIMIT`) before paginating.
        """
        if limit < 0 or offset < 0:
            raise ValueError(f"limit and offset must be non-negative (limit={limit}, offset={offset})")
        index = self._index(index_name)
        filters = normalize_filters(filter)
        try:
            records = await self.storage.enumerate(index, filters)
        except ConfigurationError:
            raise
        except Exception as exc:
            raise DocumentListError(
                f"Failed to list documents: {exc}",
                details={"index_name": index, "limit": limit, "offset": offset},
            ) from exc
        documents = aggregate_documents(records)
        return DocumentPage(
            documents=paginate(documents, limit, offset),
            total=len(documents),
            limit=limit,
            offset=offset,
        )

    async def close(self) -> None:
        await self.storage.close()


def build_service(settings: Settings | None = None) -> DocumentService:
    """Wire a :class:`DocumentService` from environment settings."""
    settings = settings or Settings()
    configure_logging(settings.log_level)
    service_config = settings.service_config()

    generator = None
    if service_config.duplicate_check.ai_decision_enabled:
        generator = ChatModelGenerator(get_chat_model(settings.decision_config()))

    return DocumentService(
        storage=create_storage_adapter(settings.storage_config()),
        embedder=EmbeddingClient(settings.embedding_config()),
        chunker=Chunker(),
        detector=DuplicateDetector(generator),
        config=service_config,
    )
