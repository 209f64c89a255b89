"""
Tests for Semantic Chunker

Tests for scriptflow/parsing/semantic_chunker.py
"""

import pytest

from scriptflow.parsing.semantic_chunker import (
    BoundaryType,
    ChunkType,
    SemanticChunker,
    count_words,
)

PARAGRAPHS = "Para one.\n\nPara two.\n\nPara three."


def make_chunker(max_chars: int) -> SemanticChunker:
    return SemanticChunker(max_tokens=max_chars, chars_per_token=1.0)


class TestChunking:
    """Tests for boundary-aware splitting."""

    def test_empty_text(self):
        assert make_chunker(100).chunk("") == []
        assert make_chunker(100).chunk("  \n ") == []

    def test_short_text_is_one_chunk(self):
        chunks = make_chunker(1000).chunk("  A short story.  ")

        assert len(chunks) == 1
        assert chunks[0].content == "A short story."
        assert chunks[0].start_index == 2
        assert chunks[0].prev_context == ""

    def test_splits_on_paragraphs(self):
        chunks = make_chunker(15).chunk(PARAGRAPHS)

        assert [c.content for c in chunks] == ["Para one.", "Para two.", "Para three."]
        assert [c.id for c in chunks] == ["chunk_0", "chunk_1", "chunk_2"]
        assert (chunks[1].start_index, chunks[1].end_index) == (11, 20)
        assert all(c.length <= 15 for c in chunks)

    def test_offsets_point_into_source(self):
        for chunk in make_chunker(15).chunk(PARAGRAPHS):
            assert PARAGRAPHS[chunk.start_index:chunk.end_index] == chunk.content

    def test_previous_context(self):
        chunks = make_chunker(15).chunk(PARAGRAPHS)

        assert chunks[1].prev_context == "Para one."
        assert chunks[1].with_context() == "Para one.\n\nPara two."

    def test_context_is_truncated(self):
        chunker = SemanticChunker(max_tokens=15, chars_per_token=1.0, context_chars=4)
        chunks = chunker.chunk(PARAGRAPHS)

        assert chunks[2].prev_context == "two."

    def test_chapter_boundary_wins(self):
        text = "Chapter 1\nThe start of it all.\nChapter 2\nThe end of it all."
        chunks = make_chunker(40).chunk(text)

        assert [c.content for c in chunks] == [
            "Chapter 1\nThe start of it all.",
            "Chapter 2\nThe end of it all.",
        ]
        assert all(c.metadata.importance == 7 for c in chunks)
        assert chunks[0].boundaries[-1].type == BoundaryType.CHAPTER

    def test_oversized_segment_is_kept_whole(self):
        text = "x" * 50
        chunks = make_chunker(10).chunk(text)

        assert len(chunks) == 1
        assert chunks[0].content == text


class TestBoundaries:
    """Tests for boundary detection."""

    def test_close_boundaries_merge_to_strongest(self):
        boundaries = make_chunker(100).identify_boundaries(PARAGRAPHS)

        assert [(b.position, b.type) for b in boundaries] == [
            (11, BoundaryType.PARAGRAPH),
            (22, BoundaryType.PARAGRAPH),
        ]

    def test_cjk_chapter_marker(self):
        text = "序幕很长很长很长很长很长。\n第二章 风起\n他来了。"
        boundaries = make_chunker(100).identify_boundaries(text)

        assert any(b.type == BoundaryType.CHAPTER for b in boundaries)


class TestMetadata:
    """Tests for chunk annotations."""

    def test_speakers(self):
        chunks = make_chunker(1000).chunk("Mara said nothing. Then Tom asked why.")

        assert chunks[0].metadata.characters == ["Mara", "Tom"]

    def test_scene_hint_from_slugline(self):
        chunks = make_chunker(1000).chunk("INT. KITCHEN - NIGHT\nMara cooks.")

        assert chunks[0].metadata.scene_hint == "KITCHEN - NIGHT"

    def test_metadata_can_be_disabled(self):
        chunker = SemanticChunker(max_tokens=1000, enrich_metadata=False)
        chunk = chunker.chunk("Mara said nothing.")[0]

        assert chunk.metadata.characters == []
        assert chunk.metadata.word_count == 0

    @pytest.mark.parametrize("content,expected", [
        ("A short line.", ChunkType.TRANSITION),
        ('"Hi," she said. "Hello," he said. ' + "a" * 200, ChunkType.DIALOGUE),
        ("He runs and jumps and falls. " + "a" * 200, ChunkType.ACTION),
        ("a " * 150, ChunkType.DESCRIPTION),
    ])
    def test_chunk_type(self, content, expected):
        assert SemanticChunker.detect_chunk_type(content) == expected

    def test_count_words(self):
        assert count_words("Hello world 你好") == 4


class TestHelpers:
    """Tests for lookup and merging."""

    def test_chunk_at_position(self):
        chunker = make_chunker(15)
        chunks = chunker.chunk(PARAGRAPHS)

        assert chunker.get_chunk_at_position(chunks, 0).id == "chunk_0"
        # Whitespace between chunks maps forward
        assert chunker.get_chunk_at_position(chunks, 10).id == "chunk_1"
        assert chunker.get_chunk_at_position(chunks, 100) is None

    def test_merge_small_chunks(self):
        chunker = make_chunker(15)
        merged = chunker.merge_small_chunks(chunker.chunk(PARAGRAPHS), min_size=10)

        assert [c.content for c in merged] == ["Para one.\n\nPara two.", "Para three."]
        assert [c.id for c in merged] == ["chunk_0", "chunk_1"]
        assert (merged[0].start_index, merged[0].end_index) == (0, 20)
        assert merged[1].prev_context == "Para one.\n\nPara two."

    def test_merge_empty(self):
        assert make_chunker(15).merge_small_chunks([]) == []
