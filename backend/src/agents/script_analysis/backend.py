"""
Analysis backend used by the script-analysis pipeline.

The pipeline never talks to a language model, document store or record
store directly. It calls a ScriptAnalysisBackend:
- HttpScriptAnalysisBackend: JSON over HTTP to the analysis service (production)
- Test doubles implement the same abstract methods

Configuration:
- SCRIPT_ANALYSIS_SERVICE_URL: Base URL of the analysis service
- SCRIPT_ANALYSIS_SERVICE_TOKEN: Bearer token for the analysis service
- SCRIPT_ANALYSIS_TIMEOUT_SECONDS: Per-request timeout (default: 120)
"""

import os
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from src.agents.constants import read_positive_int_from_env
from src.agents.errors import AgentError, AgentErrorCode
from src.agents.types import (
    AnalysisContext,
    CharacterReference,
    ExtractedElement,
    ExtractedScene,
    LinkedCastMember,
)

logger = logging.getLogger(__name__)

SCRIPT_ANALYSIS_TIMEOUT_SECONDS = read_positive_int_from_env("SCRIPT_ANALYSIS_TIMEOUT_SECONDS", 120)


@dataclass
class ScriptDocument:
    """Raw text of a script as extracted from its source file."""
    text: str
    page_count: int = 0


@dataclass
class SceneHint:
    """Continuity hints passed along with each chunk."""
    known_characters: List[str] = field(default_factory=list)
    last_scene_number: int = 0
    chunk_index: int = 0
    total_chunks: int = 1
    page_start: int = 1


@dataclass
class CreatedRecords:
    scene_ids: List[str] = field(default_factory=list)
    element_ids: List[str] = field(default_factory=list)
    cast_ids: List[str] = field(default_factory=list)


class ScriptAnalysisBackend(ABC):
    """Collaborator that performs the extraction and persistence work of each step."""

    @abstractmethod
    async def fetch_script_text(self, script_id: str) -> ScriptDocument:
        """
        Fetch the extracted text of a script.

        Raises:
            AgentError: PARSE_ERROR if the script or its file cannot be read
        """

    @abstractmethod
    async def extract_scenes(
        self,
        chunk_text: str,
        overlap_context: str,
        hint: SceneHint,
    ) -> List[ExtractedScene]:
        """Extract the scenes contained in one chunk."""

    @abstractmethod
    async def extract_elements(self, scenes: List[ExtractedScene]) -> List[ExtractedElement]:
        """Identify production elements for a batch of scenes."""

    @abstractmethod
    async def link_cast(
        self,
        project_id: str,
        characters: List[CharacterReference],
    ) -> List[LinkedCastMember]:
        """Match characters to existing cast members, creating missing ones."""

    @abstractmethod
    async def generate_synopses(self, scenes: List[ExtractedScene]) -> Dict[str, str]:
        """Return synopses keyed by scene number."""

    @abstractmethod
    async def create_records(self, context: AnalysisContext) -> CreatedRecords:
        """Persist scenes, elements and cast links for the project."""

    @abstractmethod
    async def suggest_crew(self, context: AnalysisContext) -> List[str]:
        """Suggest crew roles from the extracted elements."""


def _scene_from_payload(data: Dict[str, Any]) -> ExtractedScene:
    return ExtractedScene(
        scene_number=str(data.get("scene_number") or ""),
        int_ext=str(data.get("int_ext") or "INT"),
        set_name=str(data.get("set_name") or ""),
        time_of_day=str(data.get("time_of_day") or ""),
        page_length_eighths=int(data.get("page_length_eighths") or 0),
        synopsis=str(data.get("synopsis") or ""),
        characters=[str(c) for c in data.get("characters") or [] if c],
        script_page_start=float(data.get("script_page_start") or 0),
        script_page_end=float(data.get("script_page_end") or 0),
    )


def _element_from_payload(data: Dict[str, Any]) -> ExtractedElement:
    return ExtractedElement(
        category=str(data.get("category") or "MISC").upper(),
        name=str(data.get("name") or ""),
        description=data.get("description"),
        scene_numbers=[str(n) for n in data.get("scene_numbers") or []],
        quantity=data.get("quantity"),
    )


class HttpScriptAnalysisBackend(ScriptAnalysisBackend):
    """
    Analysis service client over HTTP.

    Status errors are raised as httpx.HTTPStatusError so the retry handler
    can tell rate limits and 5xx responses from permanent failures.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout_seconds: float = SCRIPT_ANALYSIS_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize analysis service client.

        Args:
            base_url: Service URL (or from SCRIPT_ANALYSIS_SERVICE_URL env var)
            token: Bearer token (or from SCRIPT_ANALYSIS_SERVICE_TOKEN env var)
            timeout_seconds: Per-request timeout
            transport: Custom transport (tests use httpx.MockTransport)
        """
        self.base_url = (base_url or os.getenv("SCRIPT_ANALYSIS_SERVICE_URL", "")).rstrip("/")
        if not self.base_url:
            raise ValueError("SCRIPT_ANALYSIS_SERVICE_URL is not configured")

        headers = {"Content-Type": "application/json"}
        token = token or os.getenv("SCRIPT_ANALYSIS_SERVICE_TOKEN")
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(float(timeout_seconds), connect=10.0),
            headers=headers,
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> Any:
        response = await self._client.request(method, path, json=payload)

        if response.status_code >= 400:
            logger.warning(
                "Analysis service error",
                extra={
                    "path": path,
                    "status_code": response.status_code,
                    "response_text": response.text[:500],
                },
            )
            response.raise_for_status()

        try:
            return response.json()
        except ValueError as e:
            raise AgentError(
                f"Analysis service returned invalid JSON for {path}",
                code=AgentErrorCode.JSON_PARSE_ERROR,
                details={"path": path, "response_text": response.text[:500]},
            ) from e

    async def fetch_script_text(self, script_id: str) -> ScriptDocument:
        try:
            data = await self._request("GET", f"/scripts/{script_id}/text")
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise AgentError(
                    "Script not found or missing file",
                    code=AgentErrorCode.PARSE_ERROR,
                    details={"script_id": script_id},
                ) from e
            raise

        return ScriptDocument(
            text=str(data.get("text") or ""),
            page_count=int(data.get("page_count") or 0),
        )

    async def extract_scenes(
        self,
        chunk_text: str,
        overlap_context: str,
        hint: SceneHint,
    ) -> List[ExtractedScene]:
        data = await self._request(
            "POST",
            "/scenes/extract",
            {"text": chunk_text, "overlap_context": overlap_context, "hint": asdict(hint)},
        )
        return [_scene_from_payload(s) for s in data.get("scenes") or []]

    async def extract_elements(self, scenes: List[ExtractedScene]) -> List[ExtractedElement]:
        data = await self._request(
            "POST",
            "/elements/extract",
            {"scenes": [asdict(s) for s in scenes]},
        )
        return [_element_from_payload(e) for e in data.get("elements") or []]

    async def link_cast(
        self,
        project_id: str,
        characters: List[CharacterReference],
    ) -> List[LinkedCastMember]:
        data = await self._request(
            "POST",
            "/cast/link",
            {"project_id": project_id, "characters": [asdict(c) for c in characters]},
        )
        return [
            LinkedCastMember(
                character_name=str(c.get("character_name") or ""),
                cast_member_id=str(c.get("cast_member_id") or ""),
                is_new=bool(c.get("is_new")),
                scene_ids=[str(s) for s in c.get("scene_ids") or []],
            )
            for c in data.get("cast") or []
        ]

    async def generate_synopses(self, scenes: List[ExtractedScene]) -> Dict[str, str]:
        data = await self._request(
            "POST",
            "/synopses",
            {"scenes": [asdict(s) for s in scenes]},
        )
        return {str(k): str(v) for k, v in (data.get("synopses") or {}).items()}

    async def create_records(self, context: AnalysisContext) -> CreatedRecords:
        data = await self._request(
            "POST",
            "/records",
            {
                "project_id": context.project_id,
                "script_id": context.script_id,
                "user_id": context.user_id,
                "scenes": [asdict(s) for s in context.extracted_scenes],
                "elements": [asdict(e) for e in context.extracted_elements],
                "cast": [asdict(c) for c in context.linked_cast],
            },
        )
        return CreatedRecords(
            scene_ids=[str(i) for i in data.get("scene_ids") or []],
            element_ids=[str(i) for i in data.get("element_ids") or []],
            cast_ids=[str(i) for i in data.get("cast_ids") or []],
        )

    async def suggest_crew(self, context: AnalysisContext) -> List[str]:
        data = await self._request(
            "POST",
            "/crew/suggest",
            {
                "project_id": context.project_id,
                "elements": [asdict(e) for e in context.extracted_elements],
            },
        )
        return [str(r) for r in data.get("roles") or []]
