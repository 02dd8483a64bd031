"""
Data types shared by the orchestrator and pipeline steps.

AnalysisContext is the cross-step, cross-chunk state for one job. It is
versioned and serialized to the job's context column after every
successful step so a failed job can be resumed.
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional

from src.agents.errors import AgentError, AgentErrorCode

CONTEXT_VERSION = 1


@dataclass
class StepResult:
    """
    Outcome of one pipeline step.

    should_continue marks a failure as non-fatal: the orchestrator logs it and
    moves on to the next step without failing the job.
    """
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    should_continue: bool = False


@dataclass
class ChunkData:
    """In-memory view of a script chunk carried in the context."""
    id: str
    chunk_index: int
    chunk_text: str
    page_start: int
    page_end: int
    scene_count: int
    processed: bool = False
    error: Optional[str] = None


@dataclass
class CharacterReference:
    name: str
    aliases: List[str] = field(default_factory=list)
    first_appearance: int = 0
    scene_count: int = 0


@dataclass
class LocationReference:
    name: str
    int_ext: str = "INT"
    aliases: List[str] = field(default_factory=list)
    scene_count: int = 0


@dataclass
class ExtractedElement:
    category: str
    name: str
    description: Optional[str] = None
    scene_numbers: List[str] = field(default_factory=list)
    quantity: Optional[int] = None


@dataclass
class ExtractedScene:
    scene_number: str
    int_ext: str
    set_name: str
    time_of_day: str = ""
    page_length_eighths: int = 0
    synopsis: str = ""
    characters: List[str] = field(default_factory=list)
    script_page_start: float = 0
    script_page_end: float = 0
    elements: List[ExtractedElement] = field(default_factory=list)
    estimated_hours: Optional[float] = None


@dataclass
class LinkedCastMember:
    character_name: str
    cast_member_id: str
    is_new: bool = False
    scene_ids: List[str] = field(default_factory=list)


@dataclass
class ChunkExtraction:
    """Scenes found in a single chunk, before numbering is reconciled."""
    scenes: List[ExtractedScene] = field(default_factory=list)
    characters: List[str] = field(default_factory=list)
    locations: List[str] = field(default_factory=list)


@dataclass
class JobResult:
    """Aggregate result stored on a completed job."""
    scenes_created: int = 0
    elements_created: int = 0
    cast_created: int = 0
    cast_linked: int = 0
    synopses_generated: int = 0
    time_estimates_generated: int = 0
    chunks_processed: int = 0
    total_chunks: int = 0
    warnings: List[str] = field(default_factory=list)
    scene_ids: List[str] = field(default_factory=list)
    element_ids: List[str] = field(default_factory=list)
    cast_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _scene_from_dict(data: Dict[str, Any]) -> ExtractedScene:
    payload = dict(data)
    payload["elements"] = [ExtractedElement(**e) for e in payload.get("elements") or []]
    return ExtractedScene(**payload)


@dataclass
class AnalysisContext:
    """
    Shared state for one job run.

    Collections are append-only during normal execution. last_scene_number
    keeps scene numbering continuous across chunk boundaries.
    """
    job_id: str
    project_id: str
    script_id: str
    user_id: str
    version: int = CONTEXT_VERSION

    script_text: Optional[str] = None
    total_pages: int = 0
    chunks: List[ChunkData] = field(default_factory=list)

    known_characters: List[CharacterReference] = field(default_factory=list)
    known_locations: List[LocationReference] = field(default_factory=list)
    last_scene_number: int = 0

    extracted_scenes: List[ExtractedScene] = field(default_factory=list)
    extracted_elements: List[ExtractedElement] = field(default_factory=list)
    linked_cast: List[LinkedCastMember] = field(default_factory=list)

    created_scene_ids: List[str] = field(default_factory=list)
    created_element_ids: List[str] = field(default_factory=list)
    created_cast_ids: List[str] = field(default_factory=list)
    suggested_crew_roles: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    # 0-based step a retried job starts from
    resume_step: int = 0

    def find_character(self, name: str) -> Optional[CharacterReference]:
        key = name.strip().upper()
        for character in self.known_characters:
            if character.name.upper() == key or key in (a.upper() for a in character.aliases):
                return character
        return None

    def find_location(self, name: str) -> Optional[LocationReference]:
        key = name.strip().upper()
        for location in self.known_locations:
            if location.name.upper() == key or key in (a.upper() for a in location.aliases):
                return location
        return None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisContext":
        """
        Restore a context saved by to_dict.

        Raises:
            AgentError: VALIDATION_ERROR for an unsupported version or missing ids
        """
        version = data.get("version", CONTEXT_VERSION)
        if version != CONTEXT_VERSION:
            raise AgentError(
                f"Unsupported context version: {version}",
                code=AgentErrorCode.VALIDATION_ERROR,
                details={"version": version},
            )

        known = {f.name for f in fields(cls)}
        payload = {k: v for k, v in data.items() if k in known}

        missing = [k for k in ("job_id", "project_id", "script_id", "user_id") if not payload.get(k)]
        if missing:
            raise AgentError(
                f"Context is missing required fields: {', '.join(missing)}",
                code=AgentErrorCode.VALIDATION_ERROR,
                details={"missing": missing},
            )

        payload["chunks"] = [ChunkData(**c) for c in payload.get("chunks") or []]
        payload["known_characters"] = [
            CharacterReference(**c) for c in payload.get("known_characters") or []
        ]
        payload["known_locations"] = [
            LocationReference(**loc) for loc in payload.get("known_locations") or []
        ]
        payload["extracted_scenes"] = [
            _scene_from_dict(s) for s in payload.get("extracted_scenes") or []
        ]
        payload["extracted_elements"] = [
            ExtractedElement(**e) for e in payload.get("extracted_elements") or []
        ]
        payload["linked_cast"] = [
            LinkedCastMember(**c) for c in payload.get("linked_cast") or []
        ]
        return cls(**payload)
