"""
Shooting-time heuristic.

Base time comes from page length (eighths of a page); complexity multipliers
are applied for exterior and night work, cast size, element categories and
action keywords in the synopsis. Results are rounded to the quarter hour and
clamped to 0.25..8 hours per scene.
"""

from typing import Iterable

from src.agents.constants import TIME_ESTIMATION
from src.agents.types import ExtractedElement, ExtractedScene

MIN_SCENE_HOURS = 0.25
MAX_SCENE_HOURS = 8.0
DEFAULT_PAGE_EIGHTHS = 4


def _mentions(text: str, *words: str) -> bool:
    return any(word in text for word in words)


def complexity_multiplier(scene: ExtractedScene, elements: Iterable[ExtractedElement]) -> float:
    elements = list(elements)
    categories = {e.category for e in elements}
    multiplier = 1.0

    if scene.int_ext == "EXT":
        multiplier *= TIME_ESTIMATION["EXTERIOR_MULTIPLIER"]
    elif scene.int_ext == "BOTH":
        multiplier *= (TIME_ESTIMATION["EXTERIOR_MULTIPLIER"] + 1) / 2

    if scene.time_of_day.upper() in ("NIGHT", "EVENING"):
        multiplier *= TIME_ESTIMATION["NIGHT_MULTIPLIER"]

    cast_count = len(scene.characters)
    if cast_count > 5:
        multiplier *= 1.2
    if cast_count > 10:
        multiplier *= 1.3

    if "VFX" in categories:
        multiplier *= TIME_ESTIMATION["VFX_MULTIPLIER"]
    if "STUNT" in categories:
        multiplier *= TIME_ESTIMATION["STUNT_MULTIPLIER"]
    if "SFX" in categories or "MECHANICAL_EFFECTS" in categories:
        multiplier *= 1.5
    if "ANIMAL" in categories:
        multiplier *= 1.3
    if "VEHICLE" in categories:
        multiplier *= 1.2

    for element in elements:
        text = (element.description or element.name).lower()
        if element.category == "BACKGROUND" and _mentions(text, "crowd", "large", "many"):
            multiplier *= TIME_ESTIMATION["CROWD_MULTIPLIER"]
            break
    for element in elements:
        text = (element.description or element.name).lower()
        if element.category == "CAMERA" and _mentions(text, "crane", "aerial", "underwater"):
            multiplier *= 1.5
            break

    synopsis = (scene.synopsis or "").lower()
    if _mentions(synopsis, "fight", "chase", "action"):
        multiplier *= TIME_ESTIMATION["ACTION_MULTIPLIER"]
    if _mentions(synopsis, "explosion", "crash", "fire"):
        multiplier *= 1.5

    return multiplier


def estimate_scene_hours(scene: ExtractedScene, elements: Iterable[ExtractedElement]) -> float:
    pages = (scene.page_length_eighths or DEFAULT_PAGE_EIGHTHS) / 8
    hours = pages / TIME_ESTIMATION["PAGES_PER_HOUR"]
    hours *= complexity_multiplier(scene, elements)

    # Nearest quarter hour
    hours = round(hours * 4) / 4
    return max(MIN_SCENE_HOURS, min(MAX_SCENE_HOURS, hours))
