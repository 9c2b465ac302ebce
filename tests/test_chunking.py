"""Tests for boundary-aware overlapping chunking."""

from __future__ import annotations

import pytest

from insight_pipeline.chunking import (
    DocumentChunker,
    analyze_chunk_content,
    chunk_text,
    chunking_stats,
    reconstruct_text,
)
from insight_pipeline.config import ChunkingConfig
from insight_pipeline.errors import ChunkingError


def _sentences(count: int) -> str:
    return " ".join(
        f"Sentence number {i} talks about community services and youth programs."
        for i in range(count)
    )


class TestChunkText:
    def test_twelve_thousand_chars_make_seven_chunks(self):
        text = "word " * 2400
        assert len(text) == 12_000

        chunks = chunk_text(text, ChunkingConfig(max_chunk_size=2000, overlap_size=200))

        assert len(chunks) == 7
        for prev, nxt in zip(chunks, chunks[1:]):
            assert nxt.start == prev.end - 200
        assert chunks[-1].end == len(text)

    def test_ends_snap_to_sentence_boundaries(self):
        text = _sentences(200)
        config = ChunkingConfig(max_chunk_size=2000, overlap_size=200)

        chunks = chunk_text(text, config)

        for chunk in chunks[:-1]:
            assert chunk.text.rstrip().endswith(".")
            assert chunk.end <= chunk.start + config.max_chunk_size
            assert chunk.end >= chunk.start + config.max_chunk_size - config.boundary_window
        for prev, nxt in zip(chunks, chunks[1:]):
            assert nxt.start == prev.end - 200

    def test_prefers_paragraph_break(self):
        first = "a" * 1950
        text = first + ".\n\n" + "b" * 3000
        chunks = chunk_text(text, ChunkingConfig(max_chunk_size=2000, overlap_size=200))
        assert chunks[0].text.endswith("\n\n")

    def test_chunks_are_exact_slices(self):
        text = _sentences(120)
        for chunk in chunk_text(text):
            assert text[chunk.start : chunk.end] == chunk.text

    def test_reconstruction_matches_source(self):
        text = "Intro paragraph.\n\n" + _sentences(150) + "\n\nClosing words!"
        chunks = chunk_text(text, ChunkingConfig(max_chunk_size=700, overlap_size=120))
        assert reconstruct_text(chunks) == text

    def test_chunks_never_exceed_max_size(self):
        text = _sentences(90)
        config = ChunkingConfig(max_chunk_size=500, overlap_size=50)
        assert all(len(c.text) <= 500 for c in chunk_text(text, config))

    def test_indices_are_sequential(self):
        chunks = chunk_text(_sentences(60), ChunkingConfig(max_chunk_size=400, overlap_size=40))
        assert [c.index for c in chunks] == list(range(len(chunks)))

    def test_empty_text_yields_no_chunks(self):
        assert chunk_text("") == []

    def test_short_text_is_single_chunk(self):
        chunks = chunk_text("tiny")
        assert len(chunks) == 1
        assert chunks[0].text == "tiny"

    def test_text_shorter_than_max_is_single_chunk(self):
        text = _sentences(5)
        chunks = chunk_text(text)
        assert len(chunks) == 1
        assert chunks[0].start == 0 and chunks[0].end == len(text)

    def test_non_string_raises(self):
        with pytest.raises(ChunkingError):
            chunk_text(b"bytes are not text")

    @pytest.mark.parametrize(
        "config",
        [
            ChunkingConfig(max_chunk_size=0),
            ChunkingConfig(max_chunk_size=100, overlap_size=100),
            ChunkingConfig(overlap_size=-1),
        ],
    )
    def test_invalid_config_raises(self, config):
        with pytest.raises(ChunkingError):
            chunk_text("some text", config)

    def test_page_numbers_follow_breaks(self):
        page_one = "p" * 1500
        page_two = "q" * 1500
        text = page_one + page_two
        chunks = chunk_text(
            text,
            ChunkingConfig(max_chunk_size=1000, overlap_size=100),
            page_breaks=[1500, 3000],
        )
        assert chunks[0].start_page == 1
        assert chunks[-1].end_page == 2
        spanning = [c for c in chunks if c.start < 1500 < c.end]
        assert spanning and spanning[0].start_page == 1 and spanning[0].end_page == 2


class TestDocumentChunker:
    def test_validates_config_on_construction(self):
        with pytest.raises(ChunkingError):
            DocumentChunker(ChunkingConfig(max_chunk_size=10, overlap_size=20))

    def test_chunk_uses_bound_config(self):
        chunker = DocumentChunker(ChunkingConfig(max_chunk_size=300, overlap_size=30))
        chunks = chunker.chunk(_sentences(30))
        assert len(chunks) > 1
        assert all(len(c.text) <= 300 for c in chunks)


class TestContentHints:
    def test_detects_list_and_headers(self):
        hints = analyze_chunk_content("# Findings\n\n- first point\n- second point\n")
        assert hints["has_headers"] is True
        assert hints["has_bullet_points"] is True
        assert hints["content_type"] == "mixed"

    def test_narrative_with_quote(self):
        hints = analyze_chunk_content('She said "this program changed my life" yesterday.')
        assert hints["content_type"] == "narrative"
        assert hints["has_quotes"] is True

    def test_stats_for_empty_chunks(self):
        stats = chunking_stats([], "")
        assert stats["chunks_created"] == 0
        assert stats["recommended_for_embedding"] is False

    def test_stats_score_in_range(self):
        text = _sentences(100)
        stats = chunking_stats(chunk_text(text), text)
        assert stats["chunks_created"] > 1
        assert 0.0 <= stats["quality_score"] <= 1.0
