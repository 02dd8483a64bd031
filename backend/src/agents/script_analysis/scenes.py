"""
Scene normalization and cross-chunk merging.

Chunk results are merged in chunk order. Scene numbers continue from the
highest number seen so far, so a chunk whose extraction restarts its
numbering at 1 still produces a continuous sequence.
"""

import re
from typing import Iterable, List, Optional, Sequence

from src.agents.constants import CHARS_PER_PAGE
from src.agents.types import (
    AnalysisContext,
    CharacterReference,
    ChunkData,
    ExtractedScene,
    LocationReference,
)

TIMES_OF_DAY = (
    "DAY",
    "NIGHT",
    "DAWN",
    "DUSK",
    "MORNING",
    "AFTERNOON",
    "EVENING",
    "CONTINUOUS",
)

SLUGLINE_PATTERN = re.compile(
    r"^(?:(\d+[A-Z]?)\s+)?((?:INT|EXT)(?:\s*\.?\s*/\s*(?:INT|EXT))?|INT/EXT|EXT/INT|I/E)\.?\s+(.+)$",
    re.IGNORECASE,
)
SCENE_NUMBER_PATTERN = re.compile(r"^(\d+)")

SLUGLINE_SYNOPSIS = "Auto-detected from scene heading."


def normalize_int_ext(value: Optional[str]) -> str:
    upper = str(value or "").upper().strip()
    if "/" in upper or upper == "BOTH":
        return "BOTH"
    if upper.startswith("EXT"):
        return "EXT"
    return "INT"


def normalize_time_of_day(value: Optional[str]) -> str:
    upper = str(value or "").upper().strip()
    for time in TIMES_OF_DAY:
        if time in upper:
            return time
    return "DAY"


def scene_number_value(scene_number: str) -> int:
    """Leading integer of a scene number ("12A" -> 12), 0 if none."""
    match = SCENE_NUMBER_PATTERN.match(str(scene_number or "").strip())
    return int(match.group(1)) if match else 0


def adjust_chunk_page(page: float, chunk_page_start: int) -> float:
    """Map a chunk-local page number onto the script."""
    if not page or page <= 0:
        return float(chunk_page_start)
    if page < chunk_page_start:
        return page + chunk_page_start - 1
    return page


def round_to_eighth(value: float) -> float:
    return max(1 / 8, round(value * 8) / 8)


def remember_character(context: AnalysisContext, name: str, scene_number: int) -> None:
    existing = context.find_character(name)
    if existing:
        existing.scene_count += 1
    else:
        context.known_characters.append(CharacterReference(
            name=name,
            first_appearance=scene_number,
            scene_count=1,
        ))


def remember_location(context: AnalysisContext, scene: ExtractedScene) -> None:
    existing = context.find_location(scene.set_name)
    if existing:
        existing.scene_count += 1
        if existing.int_ext != scene.int_ext:
            existing.int_ext = "BOTH"
    else:
        context.known_locations.append(LocationReference(
            name=scene.set_name,
            int_ext=scene.int_ext,
            scene_count=1,
        ))


def merge_chunk_scenes(
    context: AnalysisContext,
    chunk: ChunkData,
    scenes: Iterable[ExtractedScene],
) -> int:
    """
    Normalize one chunk's scenes and append them to the context.

    Must be called in chunk-index order.

    Returns:
        Number of scenes appended
    """
    added = 0
    seen = {(s.scene_number, s.set_name.upper()) for s in context.extracted_scenes}

    for scene in scenes:
        set_name = str(scene.set_name or "").strip()
        if not set_name:
            continue

        scene.set_name = set_name
        scene.int_ext = normalize_int_ext(scene.int_ext)
        scene.time_of_day = normalize_time_of_day(scene.time_of_day)
        scene.characters = [
            c.strip().upper() for c in scene.characters if isinstance(c, str) and c.strip()
        ]

        number = scene_number_value(scene.scene_number)
        if number == 0 or number < context.last_scene_number:
            number = context.last_scene_number + 1
            scene.scene_number = str(number)
        else:
            scene.scene_number = str(scene.scene_number).strip().upper()

        # Scenes repeated through chunk overlap are dropped
        key = (scene.scene_number, scene.set_name.upper())
        if key in seen:
            continue
        seen.add(key)

        page_start = adjust_chunk_page(scene.script_page_start, chunk.page_start)
        page_end = adjust_chunk_page(scene.script_page_end, chunk.page_start)
        scene.script_page_start = page_start
        scene.script_page_end = max(page_start, page_end)

        for name in scene.characters:
            remember_character(context, name, number)
        remember_location(context, scene)

        context.last_scene_number = max(context.last_scene_number, number)
        context.extracted_scenes.append(scene)
        added += 1

    return added


def parse_slugline(line: str) -> Optional[dict]:
    match = SLUGLINE_PATTERN.match(line)
    if not match:
        return None

    rest = (match.group(3) or "").strip()
    segments = [s.strip() for s in re.split(r"\s+-\s+", rest) if s.strip()]
    if not segments:
        return None

    tail = segments[-1].upper().replace(".", "").strip()
    has_time = any(tail == t or tail.startswith(f"{t} ") for t in TIMES_OF_DAY)
    set_segments = segments[:-1] if has_time else segments

    return {
        "scene_number": match.group(1).upper() if match.group(1) else None,
        "int_ext": normalize_int_ext(match.group(2)),
        "set_name": " - ".join(set_segments).strip() or rest,
        "time_of_day": normalize_time_of_day(tail) if has_time else "DAY",
    }


def scenes_from_sluglines(chunks: Sequence[ChunkData], last_scene_number: int = 0) -> List[ExtractedScene]:
    """
    Fallback extraction from scene headings alone.

    Used when the backend returns no scenes at all, so a script with
    recognizable headings still yields a scene list.
    """
    scenes: List[ExtractedScene] = []
    next_number = max(1, last_scene_number + 1)

    for chunk in sorted(chunks, key=lambda c: c.chunk_index):
        text = chunk.chunk_text or ""
        if not text.strip():
            continue

        headers = []
        offset = 0
        for line in text.split("\n"):
            parsed = parse_slugline(line.strip())
            if parsed:
                headers.append((offset, parsed))
            offset += len(line) + 1

        if not headers:
            continue

        page_start = chunk.page_start or 1
        page_span = max(1, (chunk.page_end or page_start) - page_start + 1)
        length = max(1, len(text))

        for i, (header_offset, header) in enumerate(headers):
            next_offset = headers[i + 1][0] if i + 1 < len(headers) else len(text)
            duration = max(1 / 8, (next_offset - header_offset) / CHARS_PER_PAGE)
            start = round_to_eighth(page_start + header_offset / length * page_span)
            end = max(start, round_to_eighth(start + duration))

            scene_number = header["scene_number"] or str(next_number)
            next_number = max(next_number + 1, scene_number_value(scene_number) + 1)

            scenes.append(ExtractedScene(
                scene_number=scene_number,
                int_ext=header["int_ext"],
                set_name=header["set_name"],
                time_of_day=header["time_of_day"],
                page_length_eighths=max(1, round((end - start) * 8) or round(duration * 8)),
                synopsis=SLUGLINE_SYNOPSIS,
                script_page_start=start,
                script_page_end=end,
            ))

    return scenes


def batched(items: Sequence, size: int) -> List[list]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]
