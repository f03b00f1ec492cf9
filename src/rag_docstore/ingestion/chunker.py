"""Text chunking strategies.

Each strategy maps onto a ``langchain_text_splitters`` splitter. Lengths are
measured in characters except for ``token``, which counts ``cl100k_base``
tokens.

Overlap between consecutive chunks:

* ``character`` (default empty separator): exactly ``overlap`` characters.
* ``token``: exactly ``overlap`` tokens.
* separator-based strategies (``recursive``, ``markdown``, ``html``,
  ``latex``): whole separator-delimited pieces totalling at most
  ``overlap`` characters are carried over.
* ``json``: no overlap; each chunk is a self-contained JSON object.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from langchain_text_splitters import (
    CharacterTextSplitter,
    Language,
    LatexTextSplitter,
    MarkdownTextSplitter,
    RecursiveCharacterTextSplitter,
    RecursiveJsonSplitter,
    TextSplitter,
    TokenTextSplitter,
)

from rag_docstore.exceptions import ChunkingError
from rag_docstore.models import Chunk, ChunkingOptions, Document

logger = logging.getLogger(__name__)

DEFAULT_SEPARATORS = ["\n\n", "\n", ". ", " ", ""]
TOKEN_ENCODING = "cl100k_base"

_MARKDOWN_HEADING = re.compile(r"^(#{1,6})[ \t]+(.+?)[ \t#]*$", re.MULTILINE)
_HTML_HEADING = re.compile(r"<h([1-6])\b[^>]*>(.*?)</h\1\s*>", re.IGNORECASE | re.DOTALL)
_HTML_TAG = re.compile(r"<[^>]+>")


def chunk_id_for(document_id: str, index: int) -> str:
    return f"{document_id}_chunk_{index}"


def build_splitter(options: ChunkingOptions) -> TextSplitter:
    """Return the text splitter configured for *options* (all but ``json``)."""
    size, overlap = options.size, options.overlap
    strategy = options.strategy

    if strategy == "recursive":
        separators = [options.separator, ""] if options.separator else DEFAULT_SEPARATORS
        return RecursiveCharacterTextSplitter(
            chunk_size=size,
            chunk_overlap=overlap,
            length_function=len,
            separators=separators,
        )
    if strategy == "character":
        # Keep whitespace so the carried-over overlap is not trimmed away.
        return CharacterTextSplitter(
            separator=options.separator or "",
            chunk_size=size,
            chunk_overlap=overlap,
            length_function=len,
            strip_whitespace=False,
        )
    if strategy == "token":
        return TokenTextSplitter(encoding_name=TOKEN_ENCODING, chunk_size=size, chunk_overlap=overlap)
    if strategy == "markdown":
        return MarkdownTextSplitter(chunk_size=size, chunk_overlap=overlap)
    if strategy == "html":
        return RecursiveCharacterTextSplitter.from_language(Language.HTML, chunk_size=size, chunk_overlap=overlap)
    if strategy == "latex":
        return LatexTextSplitter(chunk_size=size, chunk_overlap=overlap)
    raise ChunkingError(f"No text splitter for strategy {strategy!r}", details={"strategy": strategy})


def split_text(content: str, options: ChunkingOptions) -> list[str]:
    """Split *content* into raw text segments according to *options*."""
    if not content.strip():
        return []
    if options.strategy == "json":
        return _split_json(content, options)
    pieces = build_splitter(options).split_text(content)
    return [p for p in pieces if p.strip()]


def _split_json(content: str, options: ChunkingOptions) -> list[str]:
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ChunkingError(
            f"json strategy requires JSON content: {exc}", details={"strategy": "json"}
        ) from exc

    convert_lists = False
    if isinstance(data, list):
        convert_lists = True
    elif not isinstance(data, dict):
        raise ChunkingError(
            "json strategy requires a JSON object or array at the top level",
            details={"strategy": "json", "type": type(data).__name__},
        )

    splitter = RecursiveJsonSplitter(max_chunk_size=options.size)
    if convert_lists:
        data = {"items": data}
    return splitter.split_text(json_data=data, convert_lists=convert_lists, ensure_ascii=False)


class Chunker:
    """Split a :class:`Document` into ordered, position-tagged chunks."""

    def chunk(self, document: Document, options: ChunkingOptions) -> list[Chunk]:
        """Return the chunks of *document*; empty content yields ``[]``.

        ``chunk_index`` is dense from 0 in document order. Positions are
        character offsets into ``document.content``; a segment that is not a
        verbatim substring (re-serialised JSON, token decode drift) is placed
        at the previous chunk's start.
        """
        pieces = split_text(document.content, options)
        if not pieces:
            return []

        headings = _headings(document.content, options.strategy) if options.extract_metadata else []

        chunks: list[Chunk] = []
        search_from = 0
        last_start = 0
        for index, text in enumerate(pieces):
            start = document.content.find(text, search_from)
            if start < 0:
                start = document.content.find(text)
            if start < 0:
                start = last_start
            end = start + len(text)
            last_start = start
            # Character-measured overlap never reaches further back than
            # ``overlap`` characters; token overlap can.
            if options.strategy == "token":
                search_from = start + 1
            else:
                search_from = max(start + 1, end - options.overlap)

            metadata: dict[str, Any] = {
                **document.metadata,
                "chunk_index": index,
                "start_position": start,
                "end_position": end,
            }
            if options.extract_metadata:
                metadata["char_count"] = len(text)
                metadata["token_estimate"] = len(text) // 4  # rough ≈4 chars/token
                section = _section_at(headings, start)
                if section:
                    metadata["section"] = section

            chunks.append(
                Chunk(
                    id=chunk_id_for(document.id, index),
                    document_id=document.id,
                    content=text,
                    metadata=metadata,
                )
            )

        logger.debug(
            "Chunked document %s into %d chunk(s) (strategy=%s, size=%d, overlap=%d)",
            document.id,
            len(chunks),
            options.strategy,
            options.size,
            options.overlap,
        )
        return chunks


def _headings(content: str, strategy: str) -> list[tuple[int, int, str]]:
    """Return ``(position, level, title)`` for every heading in *content*."""
    if strategy == "markdown":
        return [(m.start(), len(m.group(1)), m.group(2).strip()) for m in _MARKDOWN_HEADING.finditer(content)]
    if strategy == "html":
        found = []
        for m in _HTML_HEADING.finditer(content):
            title = " ".join(_HTML_TAG.sub("", m.group(2)).split())
            if title:
                found.append((m.start(), int(m.group(1)), title))
        return found
    return []


def _section_at(headings: list[tuple[int, int, str]], position: int) -> str:
    """Heading path (``"H1 > H2"``) in force at *position*."""
    stack: list[tuple[int, str]] = []
    for pos, level, title in headings:
        if pos > position:
            break
        while stack and stack[-1][0] >= level:
            stack.pop()
        stack.append((level, title))
    return " > ".join(title for _, title in stack)
