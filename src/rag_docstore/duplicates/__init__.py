"""Duplicate detection: similarity filtering plus an LLM skip/update/add decision."""

from rag_docstore.duplicates.detector import FALLBACK_DECISION, DuplicateDetector, metadata_similarity, parse_decision
from rag_docstore.duplicates.llm import ChatModelGenerator, TextGenerator, get_chat_model

__all__ = [
    "FALLBACK_DECISION",
    "ChatModelGenerator",
    "DuplicateDetector",
    "TextGenerator",
    "get_chat_model",
    "metadata_similarity",
    "parse_decision",
]
