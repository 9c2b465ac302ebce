"""Boundary-aware, overlapping document chunking.

Every chunk is the exact slice ``text[start:end]`` of the source; nothing is
stripped, so the de-overlapped spans concatenate back to the original text.
"""

from __future__ import annotations

import bisect
import logging
import re
from typing import Any, Optional, Sequence

from .config import ChunkingConfig
from .errors import ChunkingError
from .models import Chunk

log = logging.getLogger(__name__)

_PARAGRAPH_BREAK = re.compile(r"\n[ \t]*\n\s*")
_SENTENCE_BREAK = re.compile(r"[.!?][\"')\]”’]*\s+")

_HEADER = re.compile(r"^#{1,6}\s+.+$|^.+\n[-=]{3,}$", re.MULTILINE)
_BULLET = re.compile(r"^\s*(?:[-*•]|\d+\.)\s+", re.MULTILINE)
_QUOTED = re.compile(r"\"[^\"]{10,}\"|'[^']{10,}'|“[^”]{10,}”")


def _validate(config: ChunkingConfig) -> None:
    if config.max_chunk_size <= 0:
        raise ChunkingError("max_chunk_size must be > 0")
    if config.overlap_size < 0:
        raise ChunkingError("overlap_size must be >= 0")
    if config.overlap_size >= config.max_chunk_size:
        raise ChunkingError("overlap_size must be smaller than max_chunk_size")
    if config.min_chunk_size < 0:
        raise ChunkingError("min_chunk_size must be >= 0")
    if config.boundary_window < 0:
        raise ChunkingError("boundary_window must be >= 0")


def _last_match_end(pattern: re.Pattern[str], text: str, lo: int, hi: int) -> int:
    last = -1
    for match in pattern.finditer(text, lo, hi):
        last = match.end()
    return last


def _find_boundary(text: str, start: int, cutoff: int, config: ChunkingConfig) -> int:
    """Pick the chunk end: nearest paragraph, then sentence break before *cutoff*.

    The search never reaches back past ``boundary_window`` characters, and
    the chunk must stay longer than the overlap so the scan always advances.
    """
    floor = max(start + config.overlap_size + 1, cutoff - config.boundary_window)
    if floor >= cutoff:
        return cutoff

    if config.preserve_paragraphs:
        end = _last_match_end(_PARAGRAPH_BREAK, text, floor, cutoff)
        if end > floor:
            return end

    if config.preserve_sentences:
        end = _last_match_end(_SENTENCE_BREAK, text, floor, cutoff)
        if end > floor:
            return end

    return cutoff


def _page_of(position: int, page_breaks: Sequence[int]) -> int:
    """1-based page for a character *position*; breaks are page end offsets."""
    return bisect.bisect_right(page_breaks, position) + 1


def analyze_chunk_content(text: str) -> dict[str, Any]:
    """Cheap structural hints about a chunk's content."""
    has_headers = bool(_HEADER.search(text))
    has_bullets = bool(_BULLET.search(text))
    content_type = "narrative"
    if has_bullets and has_headers:
        content_type = "mixed"
    elif has_bullets:
        content_type = "list"
    elif "|" in text and "\n" in text:
        content_type = "table"
    return {
        "has_headers": has_headers,
        "has_bullet_points": has_bullets,
        "has_quotes": bool(_QUOTED.search(text)),
        "content_type": content_type,
    }


def _make_chunk(
    text: str,
    index: int,
    start: int,
    end: int,
    page_breaks: Optional[Sequence[int]],
) -> Chunk:
    body = text[start:end]
    chunk = Chunk(
        index=index,
        start=start,
        end=end,
        text=body,
        word_count=len(body.split()),
        metadata=analyze_chunk_content(body),
    )
    if page_breaks:
        chunk.start_page = _page_of(start, page_breaks)
        chunk.end_page = _page_of(max(start, end - 1), page_breaks)
    return chunk


def chunk_text(
    text: str,
    config: Optional[ChunkingConfig] = None,
    page_breaks: Optional[Sequence[int]] = None,
) -> list[Chunk]:
    """Split *text* into ordered, overlapping chunks.

    Args:
        text: Full document text.
        config: Size, overlap and boundary settings.
        page_breaks: Optional sorted character offsets where each page ends.

    Returns:
        Chunks in document order. Empty text yields no chunks.

    Raises:
        ChunkingError: *text* is not a string or *config* is invalid.
    """
    if not isinstance(text, str):
        raise ChunkingError(f"expected text as str, got {type(text).__name__}")
    config = config or ChunkingConfig()
    _validate(config)

    if not text:
        return []

    breaks = sorted(page_breaks) if page_breaks else None
    length = len(text)
    if length <= config.min_chunk_size:
        return [_make_chunk(text, 0, 0, length, breaks)]

    chunks: list[Chunk] = []
    start = 0
    while True:
        cutoff = min(start + config.max_chunk_size, length)
        end = cutoff if cutoff >= length else _find_boundary(text, start, cutoff, config)
        chunks.append(_make_chunk(text, len(chunks), start, end, breaks))
        if end >= length:
            break

        next_start = max(0, end - config.overlap_size)
        if next_start <= start:
            next_start = end
        start = next_start

    log.debug(
        "chunk_text: %s chars -> %s chunks (max=%s overlap=%s)",
        length,
        len(chunks),
        config.max_chunk_size,
        config.overlap_size,
    )
    return chunks


def reconstruct_text(chunks: Sequence[Chunk]) -> str:
    """Concatenate chunk spans with their overlaps removed."""
    pieces: list[str] = []
    covered = 0
    for chunk in chunks:
        if chunk.end <= covered:
            continue
        skip = max(0, covered - chunk.start)
        pieces.append(chunk.text[skip:])
        covered = chunk.end
    return "".join(pieces)


class DocumentChunker:
    """Chunker bound to one configuration."""

    def __init__(self, config: Optional[ChunkingConfig] = None) -> None:
        self.config = config or ChunkingConfig()
        _validate(self.config)

    def chunk(
        self, text: str, page_breaks: Optional[Sequence[int]] = None
    ) -> list[Chunk]:
        return chunk_text(text, self.config, page_breaks)


# ---------------------------------------------------------------------------
# Chunk quality statistics
# ---------------------------------------------------------------------------


def _boundary_quality(chunks: Sequence[Chunk]) -> float:
    proper = 0.0
    for chunk in chunks:
        body = chunk.text.strip()
        if re.match(r"^[A-Z0-9\"“]", body):
            proper += 0.5
        if re.search(r"[.!?][\"')”]*$", body) or chunk.text.endswith("\n"):
            proper += 0.5
    return proper / len(chunks) if chunks else 0.0


def chunking_stats(chunks: Sequence[Chunk], text: str) -> dict[str, Any]:
    """Summarize chunk sizes and a 0-1 quality score for *chunks* of *text*."""
    if not chunks:
        return {
            "chunks_created": 0,
            "average_words": 0.0,
            "quality_score": 0.0,
            "recommended_for_embedding": False,
        }

    sizes = [chunk.word_count for chunk in chunks]
    average = sum(sizes) / len(sizes)
    score = 0.5
    if average > 0:
        variance = sum((size - average) ** 2 for size in sizes) / len(sizes)
        score += max(0.0, 1 - variance / (average * average)) * 0.2
    coverage = sum(len(chunk.text) for chunk in chunks) / max(1, len(text))
    score += min(coverage, 1.0) * 0.2
    score += _boundary_quality(chunks) * 0.1

    return {
        "chunks_created": len(chunks),
        "average_words": round(average, 1),
        "quality_score": round(min(1.0, score), 3),
        "recommended_for_embedding": 50 <= average <= 500,
    }
