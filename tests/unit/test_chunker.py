"""Unit tests for the chunker module."""

import json

import pytest
import tiktoken

from rag_docstore.exceptions import ChunkingError
from rag_docstore.ingestion.chunker import Chunker, chunk_id_for, split_text
from rag_docstore.models import ChunkingOptions, Document

# 2400 characters, no whitespace.
NUMBERED_TEXT = "".join(f"{i:04d}" for i in range(600))


def _doc(content: str, **metadata) -> Document:  # noqa: ANN003
    return Document(id="doc-1", content=content, metadata=metadata)


def test_recursive_splits_long_text() -> None:
    """A document longer than the chunk size should be split."""
    chunks = Chunker().chunk(_doc("word " * 500), ChunkingOptions(size=256, overlap=32))
    assert len(chunks) > 1
    assert all(len(c.content) <= 256 for c in chunks)


def test_chunks_preserve_document_metadata() -> None:
    chunks = Chunker().chunk(_doc("Short text.", source="test.md"), ChunkingOptions())
    assert [c.metadata["source"] for c in chunks] == ["test.md"]


def test_empty_content_yields_no_chunks() -> None:
    assert Chunker().chunk(_doc(""), ChunkingOptions()) == []
    assert Chunker().chunk(_doc("   \n\n  "), ChunkingOptions()) == []


def test_chunk_indices_are_dense_and_ids_derived() -> None:
    chunks = Chunker().chunk(_doc("word " * 500), ChunkingOptions(size=200, overlap=20))
    assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
    assert [c.id for c in chunks] == [chunk_id_for("doc-1", i) for i in range(len(chunks))]
    assert all(c.document_id == "doc-1" for c in chunks)


def test_character_overlap_is_exact() -> None:
    """size=512, overlap=50: each pair of neighbours shares exactly 50 characters."""
    options = ChunkingOptions(strategy="character", size=512, overlap=50)
    chunks = Chunker().chunk(_doc(NUMBERED_TEXT), options)

    assert len(chunks) > 2
    for previous, current in zip(chunks, chunks[1:]):
        assert previous.content[-50:] == current.content[:50]
        assert current.metadata["start_position"] == previous.metadata["end_position"] - 50


@pytest.mark.integration
def test_token_overlap_is_measured_in_tokens() -> None:
    """Neighbouring token chunks share exactly ``overlap`` cl100k_base tokens."""
    enc = tiktoken.get_encoding("cl100k_base")
    text = " ".join(["the cat sat on the mat and the dog ran"] * 60)
    options = ChunkingOptions(strategy="token", size=64, overlap=16)
    chunks = Chunker().chunk(_doc(text), options)

    assert len(chunks) > 2
    for previous, current in zip(chunks, chunks[1:]):
        assert enc.encode(previous.content)[-16:] == enc.encode(current.content)[:16]


def test_positions_point_into_the_content() -> None:
    options = ChunkingOptions(strategy="character", size=300, overlap=30)
    chunks = Chunker().chunk(_doc(NUMBERED_TEXT), options)
    for chunk in chunks:
        start, end = chunk.metadata["start_position"], chunk.metadata["end_position"]
        assert end >= start
        assert NUMBERED_TEXT[start:end] == chunk.content


@pytest.mark.parametrize(
    ("size", "overlap"),
    [(100, 100), (100, 150), (0, 0), (100, -1)],
)
def test_invalid_sizes_fail_fast(size: int, overlap: int) -> None:
    with pytest.raises(ChunkingError):
        ChunkingOptions(size=size, overlap=overlap)


def test_merged_options_keep_defaults() -> None:
    base = ChunkingOptions(strategy="markdown", size=400, overlap=40)
    merged = base.merged({"size": 800, "separator": None})
    assert (merged.strategy, merged.size, merged.overlap) == ("markdown", 800, 40)


def test_json_strategy_yields_valid_json_chunks() -> None:
    payload = {"title": "Guide", "sections": {f"s{i}": "lorem ipsum " * 5 for i in range(20)}}
    chunks = Chunker().chunk(_doc(json.dumps(payload)), ChunkingOptions(strategy="json", size=200, overlap=0))
    assert len(chunks) > 1
    for chunk in chunks:
        assert isinstance(json.loads(chunk.content), dict)


def test_json_strategy_rejects_non_json() -> None:
    with pytest.raises(ChunkingError):
        split_text("not json at all", ChunkingOptions(strategy="json"))


def test_markdown_sections_are_extracted() -> None:
    content = "# Guide\n\nIntro text for the guide.\n\n## Install\n\nRun pip install."
    options = ChunkingOptions(strategy="markdown", size=40, overlap=0, extract_metadata=True)
    chunks = Chunker().chunk(_doc(content), options)

    by_text = {c.content: c.metadata for c in chunks}
    intro = next(meta for text, meta in by_text.items() if "Intro" in text)
    install = next(meta for text, meta in by_text.items() if "Run pip" in text)
    assert intro["section"] == "Guide"
    assert install["section"] == "Guide > Install"
    assert install["char_count"] == len(next(t for t in by_text if "Run pip" in t))


def test_custom_separator_is_used() -> None:
    content = "alpha|beta|gamma|delta"
    options = ChunkingOptions(strategy="recursive", size=11, overlap=0, separator="|")
    pieces = split_text(content, options)
    assert len(pieces) > 1
    assert all(len(p) <= 11 for p in pieces)
    assert "".join(p.strip("|") for p in pieces).replace("|", "") == "alphabetagammadelta"
