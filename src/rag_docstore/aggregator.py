"""Rebuild logical documents from their stored chunks.

No backend stores a document as one record, so listing materialises
documents from the full chunk population of an index: records are grouped
by ``document_id``, the longest chunk text stands in for the content, and
chunk-specific metadata is dropped. Pagination is applied after the whole
population has been aggregated.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from rag_docstore.models import Document, SearchResult, utcnow

logger = logging.getLogger(__name__)

CHUNK_FIELDS = frozenset(
    {
        "chunk_index",
        "start_position",
        "end_position",
        "chunk_id",
        "embedding_index",
        "text",
        "char_count",
        "token_estimate",
        "section",
    }
)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp; missing or invalid values give now (UTC)."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Unparsable timestamp %r; using now", value)
            return utcnow()
    else:
        return utcnow()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def aggregate_documents(records: list[SearchResult]) -> list[Document]:
    """Group chunk *records* into documents, newest ``created_at`` first.

    Records without a ``document_id`` are their own document, keyed by the
    record id.
    """
    grouped: dict[str, dict[str, Any]] = {}
    for record in records:
        document_id = record.document_id
        text = record.metadata.get("text") or record.content or ""
        entry = grouped.get(document_id)
        if entry is None:
            metadata = {k: v for k, v in record.metadata.items() if k not in CHUNK_FIELDS}
            grouped[document_id] = {"content": text, "metadata": metadata, "chunks": 1}
            continue
        entry["chunks"] += 1
        if len(text) > len(entry["content"]):
            entry["content"] = text

    documents = [
        Document(
            id=document_id,
            content=entry["content"],
            metadata=entry["metadata"],
            created_at=parse_timestamp(entry["metadata"].get("created_at")),
            updated_at=parse_timestamp(entry["metadata"].get("updated_at")),
            chunk_count=entry["chunks"],
        )
        for document_id, entry in grouped.items()
    ]
    documents.sort(key=lambda doc: doc.created_at, reverse=True)
    return documents


def paginate(documents: list[Document], limit: int, offset: int) -> list[Document]:
    if limit < 0 or offset < 0:
        raise ValueError(f"limit and offset must be non-negative (limit={limit}, offset={offset})")
    return documents[offset : offset + limit]
