"""Structure-aware text chunking with overlapping character windows.

Splits normalized document text into :class:`~notebookrag.models.document.Chunk`
objects of roughly ``chunk_size`` characters.  Each chunk is a contiguous
span of the source, addressed by character offsets, so the document can be
reconstructed by concatenating chunks with their overlaps removed.

Cut points are chosen in priority order within a ``lookahead`` window
around the target length:

1. **Structural boundary** -- the last block start (heading, paragraph,
   table, list) in the window, so chunks begin at a natural break.
2. **Sentence boundary** -- the sentence end nearest the target, using an
   abbreviation-aware splitter that does not break on "Dr.", "vs.", etc.
3. **Hard cut** -- exactly at the target when the window holds neither.

Chunking is a pure function of (text, config): the same input always
produces the same boundaries and the same chunk ids.
"""

from __future__ import annotations

import bisect
import re
import uuid

import structlog

from notebookrag.models.document import Chunk, ChunkType
from notebookrag.utils.text_normalizer import content_hash

logger = structlog.get_logger(logger_name=__name__)

# Namespace for deterministic chunk ids.
CHUNK_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "notebookrag/chunk")

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
_TABLE_RE = re.compile(r"^\s*\|")
_LIST_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+")
_SENTENCE_END_RE = re.compile(r"[.!?][\"')\]]*(?=\s|$)")

# Common abbreviations that should NOT trigger a sentence split.
_ABBREVIATIONS = frozenset(
    {
        "Dr",
        "Mr",
        "Mrs",
        "Ms",
        "Prof",
        "Jr",
        "Sr",
        "St",
        "Ave",
        "Blvd",
        "Vol",
        "No",
        "vs",
        "etc",
        "approx",
        "dept",
        "est",
        "govt",
        "inc",
        "ltd",
        "co",
        "ft",
        "e.g",
        "i.e",
    }
)

_ABBREVIATION_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(a) for a in sorted(_ABBREVIATIONS, key=len, reverse=True)) + r")\."
)


class _Block:
    """A run of lines of one structural kind."""

    __slots__ = ("start", "kind", "heading")

    def __init__(self, start: int, kind: ChunkType, heading: str | None = None) -> None:
        self.start = start
        self.kind = kind
        self.heading = heading


class TextChunker:
    """Splits text into overlapping, structure-aligned chunks.

    Parameters
    ----------
    chunk_size:
        Target chunk length in characters (default 1000).
    overlap:
        Fraction of ``chunk_size`` repeated at the start of the next chunk
        (default 0.15).
    lookahead:
        Half-width in characters of the window around the target length in
        which a structural or sentence boundary is preferred (default 200).
    """

    def __init__(self, chunk_size: int = 1000, overlap: float = 0.15, lookahead: int = 200) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if not 0 <= overlap < 1:
            raise ValueError("overlap must be a fraction in [0, 1)")
        self._chunk_size = chunk_size
        self._overlap_chars = int(chunk_size * overlap)
        self._lookahead = max(0, min(lookahead, chunk_size // 2))

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def chunk(self, document_id: str, text: str, notebook_id: str = "") -> list[Chunk]:
        """Split *text* into :class:`Chunk` objects for *document_id*.

        Parameters
        ----------
        document_id:
            Owning document; part of every chunk id.
        text:
            Normalized document text.  Offsets index into this string.
        notebook_id:
            Copied onto each chunk for scoped retrieval.

        Returns
        -------
        list[Chunk]
            Chunks in document order.  Empty or whitespace-only input
            returns an empty list.
        """
        if not text or not text.strip():
            return []

        blocks = self._detect_blocks(text)
        block_starts = [b.start for b in blocks]
        headings = [(b.start, b.heading) for b in blocks if b.heading is not None]
        heading_starts = [h[0] for h in headings]
        sentence_ends = self._sentence_boundaries(text)

        chunks: list[Chunk] = []
        for start, end in self._spans(text, block_starts, sentence_ends):
            chunk_text = text[start:end]
            ordinal = len(chunks)
            digest = content_hash(chunk_text)
            chunks.append(
                Chunk(
                    id=chunk_id(document_id, ordinal, digest),
                    document_id=document_id,
                    notebook_id=notebook_id,
                    ordinal=ordinal,
                    text=chunk_text,
                    start_offset=start,
                    end_offset=end,
                    section_label=_nearest(headings, heading_starts, start),
                    chunk_type=_block_at(blocks, block_starts, start).kind,
                    content_hash=digest,
                )
            )

        logger.debug(
            "chunking_complete",
            document_id=document_id,
            num_chunks=len(chunks),
            avg_chars=sum(c.length for c in chunks) // len(chunks) if chunks else 0,
        )
        return chunks

    # ------------------------------------------------------------------
    # Span selection
    # ------------------------------------------------------------------

    def _spans(
        self,
        text: str,
        block_starts: list[int],
        sentence_ends: list[int],
    ) -> list[tuple[int, int]]:
        """Return ``(start, end)`` offsets of each chunk, whitespace-trimmed."""
        n = len(text)
        spans: list[tuple[int, int]] = []
        start = _skip_space(text, 0)
        while start < n:
            if n - start <= self._chunk_size:
                end = n
            else:
                end = self._cut_point(start, block_starts, sentence_ends)

            trimmed_end = end
            while trimmed_end > start and text[trimmed_end - 1].isspace():
                trimmed_end -= 1
            if trimmed_end > start:
                spans.append((start, trimmed_end))
            if end >= n:
                break

            next_start = max(end - self._overlap_chars, start + 1)
            next_start = _align_to_word(text, next_start, end)
            start = _skip_space(text, next_start)
        return spans

    def _cut_point(self, start: int, block_starts: list[int], sentence_ends: list[int]) -> int:
        target = start + self._chunk_size
        lo = max(start + 1, target - self._lookahead)
        hi = target + self._lookahead

        # 1. Last structural boundary in the window.
        i = bisect.bisect_right(block_starts, hi) - 1
        if i >= 0 and block_starts[i] >= lo:
            return block_starts[i]

        # 2. Sentence end nearest the target.
        j = bisect.bisect_left(sentence_ends, lo)
        best: int | None = None
        while j < len(sentence_ends) and sentence_ends[j] <= hi:
            candidate = sentence_ends[j]
            if best is None or abs(candidate - target) < abs(best - target):
                best = candidate
            j += 1
        if best is not None:
            return best

        # 3. Hard cut.
        return target

    # ------------------------------------------------------------------
    # Structure detection
    # ------------------------------------------------------------------

    @staticmethod
    def _detect_blocks(text: str) -> list[_Block]:
        """Scan lines and return the start offset and kind of each block.

        A new block starts after a blank line, at every heading, at every
        list item, and wherever the line kind changes (e.g. prose to table).
        The first block under a heading is folded into the heading's block
        so a cut never separates a heading from its body.
        """
        blocks: list[_Block] = []
        offset = 0
        prev_kind: ChunkType | None = None
        prev_blank = True
        after_heading = False
        for line in text.splitlines(keepends=True):
            stripped = line.strip()
            if not stripped:
                prev_blank = True
                prev_kind = None
                offset += len(line)
                continue

            heading = _HEADING_RE.match(stripped)
            if heading:
                blocks.append(_Block(offset, ChunkType.TEXT, heading.group(2).strip()))
                prev_kind = None
                after_heading = True
            else:
                if _TABLE_RE.match(line):
                    kind = ChunkType.TABLE
                elif _LIST_RE.match(line):
                    kind = ChunkType.LIST
                else:
                    kind = ChunkType.TEXT
                if after_heading:
                    blocks[-1].kind = kind
                    after_heading = False
                elif prev_blank or kind != prev_kind or kind == ChunkType.LIST:
                    blocks.append(_Block(offset, kind))
                prev_kind = kind
            prev_blank = False
            offset += len(line)

        if not blocks or blocks[0].start > 0:
            blocks.insert(0, _Block(0, ChunkType.TEXT))
        return blocks

    @staticmethod
    def _sentence_boundaries(text: str) -> list[int]:
        """Offsets just past each sentence-ending punctuation mark.

        Periods after known abbreviations are masked (same length, so
        indices stay aligned with *text*) before matching.
        """
        masked = _ABBREVIATION_RE.sub(lambda m: m.group(0)[:-1] + "\x00", text)
        return [m.end() for m in _SENTENCE_END_RE.finditer(masked)]


def chunk_id(document_id: str, ordinal: int, digest: str) -> str:
    """Deterministic chunk id from (document, position, content)."""
    return str(uuid.uuid5(CHUNK_NAMESPACE, f"{document_id}:{ordinal}:{digest}"))


def _nearest(headings: list[tuple[int, str]], heading_starts: list[int], offset: int) -> str | None:
    i = bisect.bisect_right(heading_starts, offset) - 1
    return headings[i][1] if i >= 0 else None


def _block_at(blocks: list[_Block], block_starts: list[int], offset: int) -> _Block:
    i = bisect.bisect_right(block_starts, offset) - 1
    return blocks[max(i, 0)]


def _skip_space(text: str, pos: int) -> int:
    while pos < len(text) and text[pos].isspace():
        pos += 1
    return pos


def _align_to_word(text: str, pos: int, limit: int) -> int:
    """Move *pos* forward to the start of the next word, not past *limit*."""
    if pos <= 0 or text[pos - 1].isspace():
        return pos
    end = pos
    while end < limit and not text[end].isspace():
        end += 1
    return end if end < limit else pos
