"""
Tests for HttpScriptAnalysisBackend.

Uses httpx.MockTransport in place of the analysis service.

Tests cover:
- Request shape and auth header
- Payload parsing into extraction types
- Error mapping (404, 429, invalid JSON)
"""

import json

import httpx
import pytest
from unittest.mock import AsyncMock

from src.agents.errors import AgentError, AgentErrorCode, RetryExhaustedError
from src.agents.retry import ErrorCategory, RetryHandler, RetryPolicy, categorize_error
from src.agents.script_analysis import HttpScriptAnalysisBackend, SceneHint
from src.agents.types import AnalysisContext, ExtractedScene

BASE_URL = "https://analysis.test"


class MockAnalysisService:
    """
    Records requests and replies from a route table.

    Routes map (method, path) to (status_code, response kwargs); a fresh
    response is built for every request.
    """

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def get_mock_transport(self) -> httpx.MockTransport:
        def handle_request(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            key = (request.method, request.url.path)
            if key not in self.routes:
                return httpx.Response(404, json={"error": "Not found"})
            status_code, kwargs = self.routes[key]
            return httpx.Response(status_code, **kwargs)

        return httpx.MockTransport(handle_request)


def _backend(service, token="secret-token"):
    return HttpScriptAnalysisBackend(
        base_url=BASE_URL,
        token=token,
        transport=service.get_mock_transport(),
    )


class TestHttpScriptAnalysisBackend:

    def test_requires_base_url(self, monkeypatch):
        monkeypatch.delenv("SCRIPT_ANALYSIS_SERVICE_URL", raising=False)

        with pytest.raises(ValueError):
            HttpScriptAnalysisBackend()

    @pytest.mark.asyncio
    async def test_fetch_script_text(self):
        service = MockAnalysisService({
            ("GET", "/scripts/script-1/text"): (200, {"json": {"text": "INT. HALL - DAY", "page_count": 3}}),
        })

        async with _backend(service) as backend:
            document = await backend.fetch_script_text("script-1")

        assert document.text == "INT. HALL - DAY"
        assert document.page_count == 3
        assert service.requests[0].headers["Authorization"] == "Bearer secret-token"

    @pytest.mark.asyncio
    async def test_missing_script_is_parse_error(self):
        service = MockAnalysisService({})

        async with _backend(service) as backend:
            with pytest.raises(AgentError) as exc_info:
                await backend.fetch_script_text("script-404")

        assert exc_info.value.code == AgentErrorCode.PARSE_ERROR

    @pytest.mark.asyncio
    async def test_extract_scenes_parses_payload(self):
        service = MockAnalysisService({
            ("POST", "/scenes/extract"): (200, {"json": {"scenes": [{
                "scene_number": 12,
                "int_ext": "EXT",
                "set_name": "PIER",
                "time_of_day": "NIGHT",
                "page_length_eighths": "5",
                "characters": ["ANNA", None, "BEN"],
                "script_page_start": 4,
            }]}}),
        })
        hint = SceneHint(known_characters=["ANNA"], last_scene_number=11, chunk_index=2, total_chunks=4)

        async with _backend(service) as backend:
            scenes = await backend.extract_scenes("EXT. PIER - NIGHT", "previous text", hint)

        assert scenes == [ExtractedScene(
            scene_number="12",
            int_ext="EXT",
            set_name="PIER",
            time_of_day="NIGHT",
            page_length_eighths=5,
            characters=["ANNA", "BEN"],
            script_page_start=4.0,
            script_page_end=0.0,
        )]
        sent = json.loads(service.requests[0].content)
        assert sent["overlap_context"] == "previous text"
        assert sent["hint"]["last_scene_number"] == 11

    @pytest.mark.asyncio
    async def test_extract_elements_normalizes_category(self):
        service = MockAnalysisService({
            ("POST", "/elements/extract"): (200, {"json": {"elements": [
                {"category": "prop", "name": "Lantern", "scene_numbers": [1, "2"]},
            ]}}),
        })

        async with _backend(service) as backend:
            elements = await backend.extract_elements([])

        assert elements[0].category == "PROP"
        assert elements[0].scene_numbers == ["1", "2"]

    @pytest.mark.asyncio
    async def test_create_records_sends_context(self):
        service = MockAnalysisService({
            ("POST", "/records"): (200, {"json": {"scene_ids": ["s1"], "element_ids": [], "cast_ids": ["c1"]}}),
        })
        context = AnalysisContext(job_id="job_1", project_id="p1", script_id="s1", user_id="u1")
        context.extracted_scenes.append(ExtractedScene(scene_number="1", int_ext="INT", set_name="HALL"))

        async with _backend(service) as backend:
            records = await backend.create_records(context)

        assert records.scene_ids == ["s1"]
        assert records.cast_ids == ["c1"]
        sent = json.loads(service.requests[0].content)
        assert sent["project_id"] == "p1"
        assert sent["scenes"][0]["set_name"] == "HALL"

    @pytest.mark.asyncio
    async def test_rate_limit_is_retryable(self):
        service = MockAnalysisService({
            ("POST", "/synopses"): (429, {"text": "slow down"}),
        })
        sleep = AsyncMock()
        retry = RetryHandler(RetryPolicy(max_retries=2, jitter_factor=0.0), sleep=sleep)

        async with _backend(service) as backend:
            with pytest.raises(httpx.HTTPStatusError) as exc_info:
                await backend.generate_synopses([])
            assert categorize_error(exc_info.value) == ErrorCategory.RATE_LIMIT

            with pytest.raises(RetryExhaustedError) as retry_info:
                await retry.execute(lambda: backend.generate_synopses([]), "synopses")

        assert retry_info.value.attempts == 3
        assert retry_info.value.code == AgentErrorCode.LLM_RATE_LIMIT
        assert len(service.requests) == 4

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        service = MockAnalysisService({
            ("POST", "/crew/suggest"): (200, {"text": "<html>oops</html>"}),
        })
        context = AnalysisContext(job_id="job_1", project_id="p1", script_id="s1", user_id="u1")

        async with _backend(service) as backend:
            with pytest.raises(AgentError) as exc_info:
                await backend.suggest_crew(context)

        assert exc_info.value.code == AgentErrorCode.JSON_PARSE_ERROR
