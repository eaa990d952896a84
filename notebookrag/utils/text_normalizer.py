"""Text normalization helpers for ingested documents.

Three concerns live here:

1. **Document text normalization** -- line endings, Unicode form, control
   characters, hyphenated PDF line breaks and runs of blank lines are
   normalized before chunking, so that the same document always chunks
   the same way regardless of how it was uploaded.

2. **Content hashing** -- a stable sha256 over text, used for chunk ids,
   embedding no-op detection and citation snapshots.

3. **Enumerated value matching** -- fuzzy matching of LLM-returned values
   against a metadata field's ``allowed_values`` via rapidfuzz, so that
   "Residential " or "residental" resolve to "Residential".
"""

import hashlib
import re
import unicodedata

from rapidfuzz import fuzz, process

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_HYPHEN_BREAK = re.compile(r"(\w)-\n(\w)")
_TRAILING_SPACE = re.compile(r"[ \t]+\n")
_MULTI_SPACE = re.compile(r"[ \t]{2,}")
_MULTI_NEWLINE = re.compile(r"\n{3,}")


def normalize_text(text: str) -> str:
    """Normalize raw extracted document text for chunking.

    Table rows keep their pipes and single newlines are preserved so
    structural boundaries survive normalization.

    Args:
        text: Raw text from a source file.

    Returns:
        Normalized text, stripped of leading/trailing whitespace.
    """
    if not text:
        return ""

    cleaned = unicodedata.normalize("NFC", text)
    cleaned = cleaned.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = cleaned.replace("\t", " ")
    cleaned = _CONTROL_CHARS.sub("", cleaned)
    cleaned = _HYPHEN_BREAK.sub(r"\1\2", cleaned)
    cleaned = _TRAILING_SPACE.sub("\n", cleaned)
    cleaned = _MULTI_SPACE.sub(" ", cleaned)
    cleaned = _MULTI_NEWLINE.sub("\n\n", cleaned)
    return cleaned.strip()


def content_hash(text: str) -> str:
    """Return the hex sha256 digest of *text* (UTF-8)."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def match_allowed_value(
    value: str,
    allowed_values: list[str],
    threshold: float = 0.85,
) -> str | None:
    """Resolve *value* to one of *allowed_values*.

    Exact (case-insensitive) matches win; otherwise the best rapidfuzz
    ``WRatio`` match at or above *threshold* is returned.

    Args:
        value: Candidate value from the provider response.
        allowed_values: The field's enumeration.
        threshold: Minimum similarity in [0.0, 1.0].

    Returns:
        The canonical allowed value, or ``None`` when nothing matches.
    """
    candidate = value.strip()
    if not candidate or not allowed_values:
        return None

    lowered = candidate.casefold()
    for allowed in allowed_values:
        if allowed.casefold() == lowered:
            return allowed

    result = process.extractOne(
        candidate,
        allowed_values,
        scorer=fuzz.WRatio,
        processor=str.casefold,
        score_cutoff=threshold * 100,
    )
    if result is None:
        return None
    return result[0]
