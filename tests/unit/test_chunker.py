"""Unit tests for the TextChunker - structure-aware overlapping chunking."""

from __future__ import annotations

import pytest

from notebookrag.models.document import ChunkType
from notebookrag.services.ingestion.chunker import TextChunker, chunk_id
from notebookrag.utils.text_normalizer import content_hash

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_chunker(chunk_size: int = 200, overlap: float = 0.15, lookahead: int = 40) -> TextChunker:
    """Build a TextChunker with a predictable configuration."""
    return TextChunker(chunk_size=chunk_size, overlap=overlap, lookahead=lookahead)


def _long_prose(sentences: int = 40) -> str:
    return " ".join(f"Sentence number {i} describes the site in plain words." for i in range(sentences))


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestBasicChunking:
    def test_empty_text_yields_no_chunks(self) -> None:
        chunker = _make_chunker()
        assert chunker.chunk("doc-1", "") == []
        assert chunker.chunk("doc-1", "   \n\n  ") == []

    def test_short_text_is_one_chunk(self) -> None:
        chunks = _make_chunker().chunk("doc-1", "A single short paragraph.", notebook_id="nb")

        assert len(chunks) == 1
        assert chunks[0].text == "A single short paragraph."
        assert chunks[0].ordinal == 0
        assert chunks[0].notebook_id == "nb"

    def test_long_text_produces_multiple_ordered_chunks(self, sample_text: str) -> None:
        chunks = _make_chunker().chunk("doc-1", sample_text)

        assert len(chunks) > 1
        assert [c.ordinal for c in chunks] == list(range(len(chunks)))
        for chunk in chunks:
            assert chunk.text.strip()
            assert chunk.document_id == "doc-1"

    def test_chunk_count_decreases_with_larger_size(self) -> None:
        text = _long_prose()
        small = _make_chunker(chunk_size=100, lookahead=20).chunk("d", text)
        large = _make_chunker(chunk_size=800, lookahead=100).chunk("d", text)

        assert len(small) > len(large)

    def test_invalid_configuration_rejected(self) -> None:
        with pytest.raises(ValueError):
            TextChunker(chunk_size=0)
        with pytest.raises(ValueError):
            TextChunker(overlap=1.0)


class TestOffsets:
    """Offsets address the source text exactly."""

    def test_offsets_slice_the_source(self, sample_text: str) -> None:
        for chunk in _make_chunker().chunk("doc-1", sample_text):
            assert sample_text[chunk.start_offset : chunk.end_offset] == chunk.text

    def test_chunks_cover_the_document(self) -> None:
        text = _long_prose()
        chunks = _make_chunker().chunk("doc-1", text)

        assert chunks[0].start_offset == 0
        assert chunks[-1].end_offset == len(text.rstrip())
        for prev, nxt in zip(chunks, chunks[1:]):
            # Consecutive chunks overlap or touch; no text is skipped.
            assert nxt.start_offset <= prev.end_offset + 1

    def test_overlap_repeats_text(self) -> None:
        text = _long_prose()
        chunks = _make_chunker(chunk_size=200, overlap=0.25).chunk("doc-1", text)

        overlapping = [
            (prev, nxt) for prev, nxt in zip(chunks, chunks[1:]) if nxt.start_offset < prev.end_offset
        ]
        assert overlapping, "Expected consecutive chunks to share text"

    def test_zero_overlap_has_disjoint_spans(self) -> None:
        chunks = _make_chunker(overlap=0.0).chunk("doc-1", _long_prose())
        for prev, nxt in zip(chunks, chunks[1:]):
            assert nxt.start_offset >= prev.end_offset


class TestDeterminism:
    def test_same_input_same_chunks(self, sample_text: str) -> None:
        first = _make_chunker().chunk("doc-1", sample_text)
        second = _make_chunker().chunk("doc-1", sample_text)

        assert [c.model_dump() for c in first] == [c.model_dump() for c in second]

    def test_ids_derive_from_document_position_and_content(self, sample_text: str) -> None:
        chunks = _make_chunker().chunk("doc-1", sample_text)
        for chunk in chunks:
            assert chunk.content_hash == content_hash(chunk.text)
            assert chunk.id == chunk_id("doc-1", chunk.ordinal, chunk.content_hash)

    def test_different_documents_get_different_ids(self) -> None:
        text = "Identical text in two documents."
        a = _make_chunker().chunk("doc-a", text)
        b = _make_chunker().chunk("doc-b", text)

        assert a[0].content_hash == b[0].content_hash
        assert a[0].id != b[0].id


class TestBoundaries:
    def test_headings_label_chunks(self, sample_text: str) -> None:
        chunks = _make_chunker(overlap=0.0).chunk("doc-1", sample_text)
        labels = [c.section_label for c in chunks]

        assert labels == ["Site Overview", "Planning History", "Transport"]

    def test_cuts_prefer_structural_boundaries(self, sample_text: str) -> None:
        chunks = _make_chunker(chunk_size=200, lookahead=80, overlap=0.0).chunk("doc-1", sample_text)

        assert all(c.text.startswith("#") for c in chunks)

    def test_abbreviations_do_not_end_sentences(self) -> None:
        text = (
            "Dr. Smith reviewed the scheme with Prof. Jones and Mr. Brown in detail. "
            * 6
        ).strip()
        chunks = _make_chunker(chunk_size=150, lookahead=60, overlap=0.0).chunk("doc-1", text)

        for chunk in chunks[:-1]:
            assert not chunk.text.endswith(("Dr.", "Prof.", "Mr."))

    def test_words_ending_like_abbreviations_still_end_sentences(self) -> None:
        sentences = TextChunker._sentence_boundaries("We visited Mexico. Then we left.")
        assert len(sentences) == 2

    def test_tables_and_lists_are_typed(self) -> None:
        text = (
            "Intro paragraph.\n\n"
            "| Use | Area |\n| --- | --- |\n| Homes | 1.2 ha |\n\n"
            "- first item\n- second item\n"
        )
        chunker = TextChunker(chunk_size=20, overlap=0.0, lookahead=10)
        types = {c.chunk_type for c in chunker.chunk("doc-1", text)}

        assert ChunkType.TABLE in types
        assert ChunkType.LIST in types
