"""Unit tests for upload text extraction and normalization helpers."""

from __future__ import annotations

import fitz
import pytest

from notebookrag.services.ingestion.text_extraction import (
    _mark_heading,
    extract_text,
    resolve_content_type,
)
from notebookrag.utils.errors import ValidationError
from notebookrag.utils.text_normalizer import content_hash, match_allowed_value, normalize_text


def _pdf_bytes(*pages: str) -> bytes:
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


class TestResolveContentType:
    @pytest.mark.parametrize(
        "filename, declared, expected",
        [
            ("notes.md", None, "text/markdown"),
            ("notes.txt", "text/plain; charset=utf-8", "text/plain"),
            ("report.PDF", "application/octet-stream", "application/pdf"),
            ("upload", "application/pdf", "application/pdf"),
        ],
    )
    def test_supported(self, filename, declared, expected) -> None:
        assert resolve_content_type(filename, declared) == expected

    def test_unsupported(self) -> None:
        with pytest.raises(ValidationError):
            resolve_content_type("slides.pptx", "application/vnd.ms-powerpoint")


class TestExtractText:
    def test_markdown_is_normalized(self) -> None:
        raw = "# Title\r\n\r\n\r\n\r\nBody   text with  spaces.\r\n".encode()
        assert extract_text(raw, "doc.md") == "# Title\n\nBody text with spaces."

    def test_latin1_fallback(self) -> None:
        assert extract_text("Caf\xe9 policy".encode("latin-1"), "old.txt") == "Café policy"

    def test_binary_content_rejected(self) -> None:
        with pytest.raises(ValidationError):
            extract_text(b"abc\x00def", "data.txt")

    def test_whitespace_only_rejected(self) -> None:
        with pytest.raises(ValidationError):
            extract_text(b" \n\n ", "empty.txt")

    def test_pdf_pages_are_joined(self) -> None:
        text = extract_text(_pdf_bytes("First page body", "Second page body"), "site.pdf")
        assert "First page body" in text
        assert "Second page body" in text
        assert text.index("First") < text.index("Second")

    def test_corrupt_pdf_rejected(self) -> None:
        with pytest.raises(ValidationError):
            extract_text(b"%PDF-1.4 not really a pdf", "broken.pdf")


class TestMarkHeading:
    def test_chapter_line_becomes_heading(self) -> None:
        marked = _mark_heading("Chapter 3 Transport\nThe site is served by buses.")
        assert "## Chapter 3 Transport" in marked

    def test_plain_first_line_untouched(self) -> None:
        text = "The site is served by buses.\nMore text."
        assert _mark_heading(text) == text


class TestNormalizer:
    def test_hyphenated_line_breaks_are_joined(self) -> None:
        assert normalize_text("flood-\nplain assessment") == "floodplain assessment"

    def test_table_pipes_survive(self) -> None:
        assert normalize_text("| a | b |\n| 1 | 2 |") == "| a | b |\n| 1 | 2 |"

    def test_content_hash_is_stable(self) -> None:
        assert content_hash("abc") == content_hash("abc")
        assert content_hash("abc") != content_hash("abd")
        assert len(content_hash("abc")) == 64

    @pytest.mark.parametrize(
        "value, expected",
        [
            ("residential", "Residential"),
            ("Residental", "Residential"),
            ("Industrial", None),
            ("", None),
        ],
    )
    def test_match_allowed_value(self, value, expected) -> None:
        allowed = ["Residential", "Commercial", "Mixed use"]
        assert match_allowed_value(value, allowed) == expected
