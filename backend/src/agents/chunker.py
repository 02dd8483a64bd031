"""
Script chunker.

Splits large scripts at scene boundaries so each chunk fits an extraction
call. Pure functions only: no I/O, no clock, no randomness, so the same input
always yields the same chunks.

Invariants:
- Concatenating chunk texts in index order reproduces the input exactly.
- Every non-final chunk is at least min_size and at most 1.5 * max_size long.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from src.agents.constants import (
    CHARS_PER_PAGE,
    MAX_CHARS_PER_CHUNK,
    MIN_CHARS_PER_CHUNK,
    OVERLAP_CHARS,
    SECONDS_PER_CHUNK_ESTIMATE,
)
from src.agents.errors import AgentError, AgentErrorCode

logger = logging.getLogger(__name__)

# Scene header patterns for screenplay format, matched against stripped lines
SCENE_HEADER_PATTERNS = (
    re.compile(r"^(INT|EXT|INT/EXT|I/E)\.?\s+", re.IGNORECASE),
    re.compile(r"^(\d+[A-Z]?)\s+(INT|EXT|INT/EXT|I/E)\.?\s+", re.IGNORECASE),
    re.compile(r"^SCENE\s+\d+", re.IGNORECASE),
)

# Lookahead and minimum-size extension limits, as multiples of max_size
LOOKAHEAD_FACTOR = 1.2
EXTENSION_FACTOR = 1.5

# Overlap is trimmed forward to a line start only if one is this close
OVERLAP_LINE_SEARCH = 100


@dataclass
class TextChunk:
    """One chunk produced by the chunker."""
    index: int
    text: str
    start: int
    end: int
    page_start: int
    page_end: int
    scene_count: int


@dataclass
class ChunkingResult:
    chunks: List[TextChunk]
    total_characters: int
    estimated_pages: int
    scene_boundaries: List[int] = field(default_factory=list)

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)


def is_scene_header(line: str) -> bool:
    """Check if a stripped line is a scene heading."""
    return any(pattern.search(line) for pattern in SCENE_HEADER_PATTERNS)


def find_scene_boundaries(text: str) -> List[int]:
    """
    Find character offsets of lines that start a scene.

    Returns:
        Sorted offsets of scene heading lines (may be empty)
    """
    boundaries = []
    position = 0

    for line in text.split("\n"):
        if is_scene_header(line.strip()):
            boundaries.append(position)
        position += len(line) + 1

    return boundaries


def synthetic_boundaries(text_length: int, max_size: int) -> List[int]:
    """Evenly spaced boundaries every max_size / 2 characters."""
    interval = max(1, max_size // 2)
    return list(range(0, text_length, interval))


class ScriptChunker:
    """
    Boundary-aware text chunker.

    Each chunk grows greedily from the cursor toward cursor + max_size and is
    cut at the last scene boundary in range.
    """

    def __init__(
        self,
        max_size: int = MAX_CHARS_PER_CHUNK,
        min_size: int = MIN_CHARS_PER_CHUNK,
        overlap: int = OVERLAP_CHARS,
    ):
        """
        Initialize chunker.

        Args:
            max_size: Target upper bound for chunk length
            min_size: Lower bound for every chunk but the last
            overlap: Characters of continuation context per chunk

        Raises:
            AgentError: CHUNK_ERROR if the bounds are inconsistent
        """
        if max_size <= 0 or min_size < 0 or overlap < 0:
            raise AgentError(
                "Chunk sizes must be positive",
                code=AgentErrorCode.CHUNK_ERROR,
                details={"max_size": max_size, "min_size": min_size, "overlap": overlap},
            )
        if min_size > max_size:
            raise AgentError(
                f"min_size ({min_size}) must not exceed max_size ({max_size})",
                code=AgentErrorCode.CHUNK_ERROR,
                details={"max_size": max_size, "min_size": min_size},
            )

        self.max_size = max_size
        self.min_size = min_size
        self.overlap = overlap

    def chunk(self, text: str) -> ChunkingResult:
        """
        Split text into ordered chunks.

        Empty text yields a single empty chunk. Text without scene headings
        is split on synthetic boundaries.
        """
        text_length = len(text)
        estimated_pages = math.ceil(text_length / CHARS_PER_PAGE)
        boundaries = find_scene_boundaries(text)

        if text_length <= self.max_size:
            chunk = TextChunk(
                index=0,
                text=text,
                start=0,
                end=text_length,
                page_start=1,
                page_end=max(1, estimated_pages),
                scene_count=len(boundaries),
            )
            return ChunkingResult(
                chunks=[chunk],
                total_characters=text_length,
                estimated_pages=estimated_pages,
                scene_boundaries=boundaries,
            )

        if not boundaries:
            logger.debug(
                "No scene headings found, using synthetic boundaries",
                extra={"text_length": text_length, "max_size": self.max_size},
            )
            boundaries = synthetic_boundaries(text_length, self.max_size)

        chunks = self._split_at_boundaries(text, boundaries)

        return ChunkingResult(
            chunks=chunks,
            total_characters=text_length,
            estimated_pages=estimated_pages,
            scene_boundaries=boundaries,
        )

    def _split_at_boundaries(self, text: str, boundaries: Sequence[int]) -> List[TextChunk]:
        chunks: List[TextChunk] = []
        text_length = len(text)
        start = 0

        while start < text_length:
            target_end = start + self.max_size
            split_point = self._find_split_point(boundaries, start, target_end, text_length)

            # Avoid tiny non-final chunks by extending to the next boundary
            if split_point - start < self.min_size and split_point < text_length:
                next_boundary = _first_after(boundaries, split_point)
                if (
                    next_boundary is not None
                    and next_boundary - start <= self.max_size * EXTENSION_FACTOR
                ):
                    split_point = next_boundary

            scene_count = sum(1 for b in boundaries if start <= b < split_point)

            chunks.append(TextChunk(
                index=len(chunks),
                text=text[start:split_point],
                start=start,
                end=split_point,
                page_start=start // CHARS_PER_PAGE + 1,
                page_end=max(start // CHARS_PER_PAGE + 1, math.ceil(split_point / CHARS_PER_PAGE)),
                scene_count=scene_count,
            ))

            start = split_point

        return chunks

    def _find_split_point(
        self,
        boundaries: Sequence[int],
        start: int,
        target_end: int,
        text_length: int,
    ) -> int:
        # Near the end: take the rest rather than leave a runt
        if target_end >= text_length - self.min_size:
            return text_length

        # Last boundary in range, leaving at least min_size behind it
        candidates = [b for b in boundaries if start + self.min_size < b <= target_end]
        if candidates:
            return candidates[-1]

        next_boundary = _first_after(boundaries, target_end)
        if next_boundary is not None and next_boundary - start <= self.max_size * LOOKAHEAD_FACTOR:
            return next_boundary

        return min(target_end, text_length)

    def get_overlap_context(self, chunks: Sequence, index: int) -> str:
        """
        Trailing context from the chunk before `index`.

        Takes the last `overlap` characters of the previous chunk and, if a
        line break occurs near the start of that tail, starts just after it.
        Accepts TextChunk, ChunkData or anything with a text/chunk_text attribute.
        """
        if index <= 0 or index > len(chunks):
            return ""

        previous = chunks[index - 1]
        text = getattr(previous, "text", None)
        if text is None:
            text = getattr(previous, "chunk_text", "")

        if self.overlap == 0:
            return ""

        tail = text[max(0, len(text) - self.overlap):]
        newline_index = tail.find("\n")

        if 0 < newline_index < OVERLAP_LINE_SEARCH:
            return tail[newline_index + 1:]

        return tail

    @staticmethod
    def estimate_processing_time(chunk_count: int) -> int:
        """Rough processing estimate in seconds."""
        return chunk_count * SECONDS_PER_CHUNK_ESTIMATE


def _first_after(boundaries: Sequence[int], position: int) -> Optional[int]:
    for boundary in boundaries:
        if boundary > position:
            return boundary
    return None


def chunk_text(
    text: str,
    max_size: int = MAX_CHARS_PER_CHUNK,
    min_size: int = MIN_CHARS_PER_CHUNK,
    overlap: int = OVERLAP_CHARS,
) -> List[TextChunk]:
    """Quick chunk with explicit settings."""
    return ScriptChunker(max_size=max_size, min_size=min_size, overlap=overlap).chunk(text).chunks
