"""
Unit tests for the script chunker.

Tests cover:
- Single-chunk and empty input
- Splitting at the last scene boundary in range
- Lookahead and synthetic boundaries
- Totality, size bounds and determinism
- Overlap context
"""

import pytest

from src.agents.chunker import (
    ScriptChunker,
    TextChunk,
    chunk_text,
    find_scene_boundaries,
    is_scene_header,
)
from src.agents.errors import AgentError, AgentErrorCode
from src.agents.types import ChunkData


def _scene(header: str, length: int) -> str:
    """A scene of exactly `length` characters ending in a newline."""
    text = header + "\n"
    while len(text) < length:
        text += "A" * 99 + "\n"
    return text[:length - 1] + "\n"


def _script(scene_count: int, scene_length: int) -> str:
    return "".join(
        _scene(f"INT. ROOM {i} - DAY", scene_length) for i in range(scene_count)
    )


@pytest.fixture
def chunker():
    return ScriptChunker(max_size=12000, min_size=2500, overlap=500)


class TestSceneHeaders:

    @pytest.mark.parametrize("line", [
        "INT. KITCHEN - DAY",
        "EXT. BEACH - NIGHT",
        "INT/EXT. CAR - CONTINUOUS",
        "I/E CAR - DAY",
        "12A INT. OFFICE - DAY",
        "SCENE 4",
        "int. lowercase - day",
    ])
    def test_recognized_headers(self, line):
        assert is_scene_header(line)

    @pytest.mark.parametrize("line", [
        "INTERIOR DESIGN IS HARD",
        "She walks to the EXT. door",
        "",
    ])
    def test_non_headers(self, line):
        assert not is_scene_header(line)

    def test_boundaries_are_line_offsets(self):
        text = "INT. A - DAY\nAction.\nEXT. B - NIGHT\nMore."

        assert find_scene_boundaries(text) == [0, len("INT. A - DAY\nAction.\n")]


class TestChunk:

    def test_short_text_is_one_chunk(self, chunker):
        text = _script(2, 1000)

        result = chunker.chunk(text)

        assert result.total_chunks == 1
        chunk = result.chunks[0]
        assert chunk.text == text
        assert chunk.page_start == 1
        assert chunk.page_end == 2
        assert chunk.scene_count == 2

    def test_empty_text_is_one_empty_chunk(self, chunker):
        result = chunker.chunk("")

        assert len(result.chunks) == 1
        assert result.chunks[0].text == ""
        assert result.chunks[0].page_end == 1
        assert result.estimated_pages == 0

    def test_splits_at_last_boundary_in_range(self, chunker):
        text = _script(10, 3000)

        result = chunker.chunk(text)

        assert [c.end for c in result.chunks] == [12000, 24000, 30000]
        assert [len(c.text) for c in result.chunks] == [12000, 12000, 6000]
        assert all(c.scene_count == 4 for c in result.chunks[:2])
        assert result.chunks[2].scene_count == 2

    def test_page_estimates(self, chunker):
        result = chunker.chunk(_script(10, 3000))

        second = result.chunks[1]
        assert second.page_start == 9
        assert second.page_end == 16
        assert result.estimated_pages == 20

    def test_looks_ahead_to_nearby_boundary(self, chunker):
        text = _scene("INT. A - DAY", 13000) + _scene("EXT. B - DAY", 17000)

        result = chunker.chunk(text)

        assert [c.end for c in result.chunks] == [13000, 25000, 30000]

    def test_synthetic_boundaries_without_headers(self, chunker):
        text = "word " * 6000

        result = chunker.chunk(text)

        assert result.total_chunks > 1
        assert "".join(c.text for c in result.chunks) == text
        assert result.scene_boundaries == [0, 6000, 12000, 18000, 24000]

    @pytest.mark.parametrize("scene_count,scene_length", [
        (10, 3000),
        (40, 777),
        (3, 20000),
        (25, 4100),
        (7, 12500),
    ])
    def test_totality_and_bounds(self, chunker, scene_count, scene_length):
        text = _script(scene_count, scene_length)

        chunks = chunker.chunk(text).chunks

        assert "".join(c.text for c in chunks) == text
        assert [c.index for c in chunks] == list(range(len(chunks)))
        for previous, current in zip(chunks, chunks[1:]):
            assert previous.end == current.start
        for chunk in chunks[:-1]:
            assert 2500 <= len(chunk.text) <= 12000 * 1.5

    def test_deterministic(self, chunker):
        text = _script(17, 2300)

        first = [(c.start, c.end) for c in chunker.chunk(text).chunks]
        second = [(c.start, c.end) for c in chunker.chunk(text).chunks]

        assert first == second

    def test_chunk_text_helper(self):
        chunks = chunk_text(_script(10, 3000), max_size=12000, min_size=2500)

        assert len(chunks) == 3

    def test_min_size_above_max_size_rejected(self):
        with pytest.raises(AgentError) as exc_info:
            ScriptChunker(max_size=1000, min_size=2000)

        assert exc_info.value.code == AgentErrorCode.CHUNK_ERROR

    def test_processing_estimate(self):
        assert ScriptChunker.estimate_processing_time(4) == 60


class TestOverlapContext:

    def _chunks(self, *texts):
        return [
            TextChunk(index=i, text=t, start=0, end=len(t), page_start=1, page_end=1, scene_count=0)
            for i, t in enumerate(texts)
        ]

    def test_first_chunk_has_no_overlap(self):
        chunker = ScriptChunker(max_size=100, min_size=10, overlap=20)

        assert chunker.get_overlap_context(self._chunks("abc", "def"), 0) == ""

    def test_trims_to_next_line(self):
        chunker = ScriptChunker(max_size=100, min_size=10, overlap=20)
        chunks = self._chunks("first line\nsecond line here\nthe end", "next")

        assert chunker.get_overlap_context(chunks, 1) == "the end"

    def test_tail_without_newline(self):
        chunker = ScriptChunker(max_size=100, min_size=10, overlap=5)
        chunks = self._chunks("abcdefghij", "next")

        assert chunker.get_overlap_context(chunks, 1) == "fghij"

    def test_accepts_persisted_chunks(self):
        chunker = ScriptChunker(max_size=100, min_size=10, overlap=5)
        chunks = [
            ChunkData(id="c0", chunk_index=0, chunk_text="abcdefghij", page_start=1, page_end=1, scene_count=0),
            ChunkData(id="c1", chunk_index=1, chunk_text="next", page_start=1, page_end=1, scene_count=0),
        ]

        assert chunker.get_overlap_context(chunks, 1) == "fghij"

    def test_zero_overlap(self):
        chunker = ScriptChunker(max_size=100, min_size=10, overlap=0)

        assert chunker.get_overlap_context(self._chunks("abc", "def"), 1) == ""
