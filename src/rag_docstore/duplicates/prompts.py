"""Prompt template for the near-duplicate resolution decision."""

from __future__ import annotations

from typing import Any

from rag_docstore.models import SimilarDocument

DECISION_INSTRUCTIONS = """\
You are the curator of a document knowledge base. A new document is about
to be ingested and the documents below already exist with a high semantic
similarity to it. Compare them and choose the best action.

Actions:
  "skip"   – the content is substantially the same and the new document is
             no better than the existing one
  "update" – the new document is an improved or more recent version of one
             existing document; name it in "target_document_id"
  "add"    – the documents are similar but the new one brings a different
             perspective or complementary information

Consider content quality and freshness, differences in title, author and
category, completeness and accuracy, and the value to the reader.

Respond with **only** a JSON object with exactly these keys, no markdown
fences, no commentary:

  "action"             – "skip", "update" or "add"
  "reason"             – one sentence explaining the decision
  "target_document_id" – id of the document to replace (only for "update")
  "confidence"         – number between 0.0 and 1.0
"""


def _preview(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def _describe(metadata: dict[str, Any]) -> str:
    return (
        f"Title: {metadata.get('title') or 'not set'}\n"
        f"Author: {metadata.get('author') or 'not set'}\n"
        f"Category: {metadata.get('category') or 'not set'}"
    )


def build_decision_prompt(
    new_content: str,
    new_metadata: dict[str, Any],
    similar_documents: list[SimilarDocument],
    threshold: float,
    preview_chars: int = 500,
) -> str:
    """Render the single-string prompt sent to the decision model."""
    similar_blocks = "\n\n".join(
        f"--- Similar document {i} (id: {doc.document_id}, similarity: {doc.score:.3f}) ---\n"
        f"{_describe(doc.metadata)}\n"
        f"Content: {_preview(doc.content, preview_chars)}"
        for i, doc in enumerate(similar_documents, 1)
    )
    return (
        f"{DECISION_INSTRUCTIONS}\n"
        f"# New document\n"
        f"{_describe(new_metadata)}\n"
        f"Content: {_preview(new_content, preview_chars)}\n\n"
        f"# Existing similar documents (similarity threshold: {threshold})\n"
        f"{similar_blocks}\n"
    )
