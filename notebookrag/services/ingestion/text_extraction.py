"""Text extraction for uploaded files.

Converts raw upload bytes into normalized text ready for chunking.  Plain
text and markdown are decoded as UTF-8 (with a latin-1 fallback for legacy
exports); PDFs are read page by page with PyMuPDF (fitz).  PDF pages whose
first lines look like chapter headings are prefixed with a markdown heading
so the chunker picks them up as section labels.
"""

from __future__ import annotations

import re
from pathlib import PurePath

import fitz  # PyMuPDF -- the "fitz" import name is a PyMuPDF convention
import structlog

from notebookrag.utils.errors import ValidationError
from notebookrag.utils.text_normalizer import normalize_text

logger = structlog.get_logger(logger_name=__name__)

SUPPORTED_CONTENT_TYPES = {
    "text/plain": "text",
    "text/markdown": "markdown",
    "text/x-markdown": "markdown",
    "application/pdf": "pdf",
}

_EXTENSION_TYPES = {
    ".txt": "text/plain",
    ".text": "text/plain",
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".pdf": "application/pdf",
}

SUPPORTED_EXTENSIONS = frozenset(_EXTENSION_TYPES)

_CHAPTER_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"^Chapter\s+\d+", re.IGNORECASE),
    re.compile(r"^PART\s+[IVXLCDM\d]+", re.IGNORECASE),
    re.compile(r"^\d+(?:\.\d+)*\.?\s+[A-Z]\S"),
    re.compile(r"^[A-Z][A-Z\s]{4,}$"),
]


def resolve_content_type(filename: str, content_type: str | None) -> str:
    """Return a supported content type for the upload.

    The declared type wins when it is supported; otherwise the filename
    extension decides.  Generic types such as ``application/octet-stream``
    fall through to the extension.

    Raises
    ------
    ValidationError
        If neither the declared type nor the extension is supported.
    """
    declared = (content_type or "").split(";")[0].strip().lower()
    if declared in SUPPORTED_CONTENT_TYPES:
        return declared
    by_extension = _EXTENSION_TYPES.get(PurePath(filename).suffix.lower())
    if by_extension:
        return by_extension
    raise ValidationError(
        message=f"Unsupported file type for {filename!r} (content type {content_type!r})"
    )


def extract_text(data: bytes, filename: str, content_type: str | None = None) -> str:
    """Extract and normalize the text of an upload.

    Raises
    ------
    ValidationError
        For unsupported types or files that contain no extractable text.
    """
    resolved = resolve_content_type(filename, content_type)
    kind = SUPPORTED_CONTENT_TYPES[resolved]
    raw = _extract_pdf(data, filename) if kind == "pdf" else _decode(data)
    text = normalize_text(raw)
    if not text:
        raise ValidationError(message=f"No extractable text in {filename!r}")
    logger.info("text_extracted", filename=filename, content_type=resolved, chars=len(text))
    return text


def _decode(data: bytes) -> str:
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError:
        text = data.decode("latin-1")
    if "\x00" in text:
        raise ValidationError(message="Binary content is not valid text")
    return text


def _extract_pdf(data: bytes, filename: str) -> str:
    """Read every page's text layer; chapter-like first lines become headings."""
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as exc:
        logger.error("pdf_open_failed", filename=filename, error=str(exc))
        raise ValidationError(message=f"Could not open PDF {filename!r}: {exc}") from exc

    pages: list[str] = []
    try:
        for page_num in range(len(doc)):
            text = doc[page_num].get_text("text").strip()
            if text:
                pages.append(_mark_heading(text))
    finally:
        doc.close()

    if not pages:
        logger.warning("pdf_no_text_extracted", filename=filename)
    else:
        logger.debug("pdf_pages_extracted", filename=filename, pages=len(pages))
    return "\n\n".join(pages)


def _mark_heading(page_text: str) -> str:
    lines = page_text.split("\n")
    for idx, line in enumerate(lines[:5]):
        stripped = line.strip()
        if not stripped:
            continue
        if any(p.match(stripped) for p in _CHAPTER_PATTERNS):
            lines[idx] = f"\n## {stripped}\n"
        break
    return "\n".join(lines)
