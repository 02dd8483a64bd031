"""
Tests for the script analysis pipeline.

Runs ScriptAnalysisAgent end to end against an in-memory backend.

Tests cover:
- Kickoff guard against concurrent jobs for one script
- Full pipeline run and result aggregation
- Best-effort vs fatal step failures
- Retrying a failed job from its last successful step
- Cancellation between steps
- Scene merging and time estimation helpers
"""

import pytest
from unittest.mock import AsyncMock, patch

from src.agents.chunker import ScriptChunker
from src.agents.constants import AgentJobStatus
from src.agents.errors import (
    AgentError,
    AgentErrorCode,
    JobAlreadyActiveError,
    JobCancelledError,
    StepFailedError,
)
from src.agents.retry import RetryHandler, RetryPolicy
from src.agents.script_analysis import ScriptAnalysisAgent, enqueue_retry, enqueue_script_analysis
from src.agents.script_analysis.estimate import estimate_scene_hours
from src.agents.script_analysis.scenes import merge_chunk_scenes
from src.agents.types import AnalysisContext, ChunkData, ExtractedElement, ExtractedScene
from src.tests.mocks import SAMPLE_SCENE_COUNT, SAMPLE_SCRIPT, MockScriptAnalysisBackend


@pytest.fixture
def backend():
    return MockScriptAnalysisBackend()


@pytest.fixture
def agent_kwargs():
    return {
        "retry_handler": RetryHandler(RetryPolicy(jitter_factor=0.0), sleep=AsyncMock()),
        "chunker": ScriptChunker(max_size=200, min_size=50, overlap=20),
    }


def _start(job_manager, backend, agent_kwargs):
    return ScriptAnalysisAgent.start(
        job_manager, backend, "project-1", "script-1", "user-1", **agent_kwargs
    )


class TestEnqueue:

    def test_creates_pending_job(self, job_manager):
        job = enqueue_script_analysis(job_manager, "project-1", "script-1", "user-1")

        assert job.status == AgentJobStatus.PENDING
        assert job.total_steps == 9
        assert job.started_at is None

    def test_rejects_second_job_for_script(self, job_manager):
        first = enqueue_script_analysis(job_manager, "project-1", "script-1", "user-1")

        with pytest.raises(JobAlreadyActiveError) as exc_info:
            enqueue_script_analysis(job_manager, "project-1", "script-1", "user-1")

        assert exc_info.value.existing_job_id == first.id

    def test_other_script_unaffected(self, job_manager):
        enqueue_script_analysis(job_manager, "project-1", "script-1", "user-1")

        assert enqueue_script_analysis(job_manager, "project-1", "script-2", "user-1") is not None

    def test_stale_job_does_not_block(self, job_manager, make_job):
        stale = make_job(status=AgentJobStatus.EXTRACTING_SCENES, started_minutes_ago=30)

        job = enqueue_script_analysis(job_manager, "project-1", "script-1", "user-1")

        assert job.id != stale.id
        assert job_manager.get_job(stale.id).status == AgentJobStatus.FAILED


class TestFullRun:

    @pytest.mark.asyncio
    async def test_completes_all_steps(self, job_manager, backend, agent_kwargs):
        agent = _start(job_manager, backend, agent_kwargs)

        result = await agent.run()

        job = job_manager.get_job(agent.job_id)
        assert job.status == AgentJobStatus.COMPLETED
        assert job.progress_percent == 100
        assert job.current_step == 9
        assert job.result["scenes_created"] == SAMPLE_SCENE_COUNT

        assert result.scenes_created == SAMPLE_SCENE_COUNT
        assert result.elements_created == 1
        assert result.cast_created == 1
        assert result.cast_linked == 1
        assert result.synopses_generated == SAMPLE_SCENE_COUNT
        assert result.time_estimates_generated == SAMPLE_SCENE_COUNT
        assert result.total_chunks > 1
        assert result.chunks_processed == result.total_chunks
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_scene_numbers_continuous_across_chunks(self, job_manager, backend, agent_kwargs):
        agent = _start(job_manager, backend, agent_kwargs)

        await agent.run()

        scenes = agent.context.extracted_scenes
        assert [s.scene_number for s in scenes] == [str(i) for i in range(1, SAMPLE_SCENE_COUNT + 1)]
        assert [s.set_name for s in scenes] == [f"ROOM {i}" for i in range(1, SAMPLE_SCENE_COUNT + 1)]
        assert backend.calls["extract_scenes"] == len(agent.context.chunks)

    @pytest.mark.asyncio
    async def test_chunks_persisted_and_processed(self, job_manager, backend, agent_kwargs):
        agent = _start(job_manager, backend, agent_kwargs)

        await agent.run()

        chunks = job_manager.get_chunks(agent.job_id)
        assert len(chunks) == len(agent.context.chunks)
        assert all(c.processed for c in chunks)
        assert "".join(c.chunk_text for c in chunks) == SAMPLE_SCRIPT

    @pytest.mark.asyncio
    async def test_job_claimed_once(self, job_manager, backend, agent_kwargs):
        agent = _start(job_manager, backend, agent_kwargs)
        await agent.run()

        with pytest.raises(JobAlreadyActiveError):
            await agent.run()

    @pytest.mark.asyncio
    async def test_slugline_fallback_when_extractor_returns_nothing(self, job_manager, backend, agent_kwargs):
        backend.extract_scenes = AsyncMock(return_value=[])
        agent = _start(job_manager, backend, agent_kwargs)

        result = await agent.run()

        assert result.scenes_created == SAMPLE_SCENE_COUNT
        assert any("recovered 6 scenes from scene headings" in w for w in result.warnings)


class TestStepFailures:

    @pytest.mark.asyncio
    async def test_best_effort_step_failure_completes_job(self, job_manager, backend, agent_kwargs):
        backend.failures["link_cast"] = ValueError("malformed cast payload")
        agent = _start(job_manager, backend, agent_kwargs)

        result = await agent.run()

        assert job_manager.get_job(agent.job_id).status == AgentJobStatus.COMPLETED
        assert result.cast_linked == 0
        assert any(
            w.startswith("Linking characters to cast members did not finish") and "malformed cast payload" in w
            for w in result.warnings
        )

    @pytest.mark.asyncio
    async def test_short_script_fails_parsing(self, job_manager, agent_kwargs):
        agent = _start(job_manager, MockScriptAnalysisBackend(text="INT. ROOM - DAY"), agent_kwargs)

        with pytest.raises(StepFailedError):
            await agent.run()

        job = job_manager.get_job(agent.job_id)
        assert job.status == AgentJobStatus.FAILED
        assert "too short" in job.error_message
        assert job.error_details["code"] == "PARSE_ERROR"
        assert job.error_details["last_successful_step"] == 0

    @pytest.mark.asyncio
    async def test_image_only_script(self, job_manager, agent_kwargs):
        agent = _start(job_manager, MockScriptAnalysisBackend(text="  \n "), agent_kwargs)

        with pytest.raises(StepFailedError):
            await agent.run()

        assert "image-based" in job_manager.get_job(agent.job_id).error_message

    @pytest.mark.asyncio
    async def test_record_creation_failure_is_fatal(self, job_manager, backend, agent_kwargs):
        backend.failures["create_records"] = ValueError("constraint violated")
        agent = _start(job_manager, backend, agent_kwargs)

        with pytest.raises(StepFailedError):
            await agent.run()

        job = job_manager.get_job(agent.job_id)
        assert job.status == AgentJobStatus.FAILED
        assert job.error_details["step"] == "creating_records"
        assert job.error_details["last_successful_step"] == 7
        assert job.error_details["last_successful_step_name"] == "estimating_time"
        assert "suggest_crew" not in backend.calls


class TestRetry:

    @pytest.mark.asyncio
    async def test_retry_resumes_after_last_successful_step(self, job_manager, backend, agent_kwargs):
        backend.failures["create_records"] = ValueError("constraint violated")
        failed_agent = _start(job_manager, backend, agent_kwargs)
        with pytest.raises(StepFailedError):
            await failed_agent.run()
        extract_calls = backend.calls["extract_scenes"]
        del backend.failures["create_records"]

        agent = ScriptAnalysisAgent.retry_failed(failed_agent.job_id, job_manager, backend, **agent_kwargs)
        result = await agent.run()

        assert agent.job_id != failed_agent.job_id
        assert agent.context.resume_step == 7
        assert backend.calls["extract_scenes"] == extract_calls
        assert backend.calls["create_records"] == 2
        assert result.scenes_created == SAMPLE_SCENE_COUNT
        assert job_manager.get_job(agent.job_id).status == AgentJobStatus.COMPLETED
        assert job_manager.get_job(failed_agent.job_id).status == AgentJobStatus.FAILED

        chunks = job_manager.get_chunks(agent.job_id)
        assert len(chunks) == len(failed_agent.context.chunks)
        assert all(c.processed for c in chunks)

    @pytest.mark.asyncio
    async def test_retry_job_created_ready_to_resume(self, job_manager, backend, agent_kwargs):
        backend.failures["create_records"] = ValueError("constraint violated")
        failed_agent = _start(job_manager, backend, agent_kwargs)
        with pytest.raises(StepFailedError):
            await failed_agent.run()

        with patch.object(job_manager.db, "commit", wraps=job_manager.db.commit) as commit:
            job = enqueue_retry(job_manager, failed_agent.job_id)

        # A worker claiming the job right away already sees its context and chunks
        assert commit.call_count == 1
        assert job.context["resume_step"] == 7
        assert job.context["job_id"] == job.id
        chunks = job_manager.get_chunks(job.id)
        assert len(chunks) == len(failed_agent.context.chunks)
        assert all(c.processed for c in chunks)
        assert [c["id"] for c in job.context["chunks"]] == [c.id for c in chunks]

    @pytest.mark.asyncio
    async def test_retry_after_first_step_starts_over(self, job_manager, agent_kwargs):
        failed_agent = _start(job_manager, MockScriptAnalysisBackend(text="too short"), agent_kwargs)
        with pytest.raises(StepFailedError):
            await failed_agent.run()

        job = enqueue_retry(job_manager, failed_agent.job_id)

        assert job.status == AgentJobStatus.PENDING
        assert job.context is None

    def test_retry_requires_failed_job(self, job_manager, make_job):
        job = make_job(status=AgentJobStatus.COMPLETED)

        with pytest.raises(AgentError) as exc_info:
            enqueue_retry(job_manager, job.id)

        assert exc_info.value.code == AgentErrorCode.VALIDATION_ERROR


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_during_extraction_stops_at_next_step(self, job_manager, backend, agent_kwargs):
        agent = _start(job_manager, backend, agent_kwargs)
        backend.on_extract = lambda: job_manager.cancel_job(agent.job_id)

        with pytest.raises(JobCancelledError):
            await agent.run()

        job = job_manager.get_job(agent.job_id)
        assert job.status == AgentJobStatus.CANCELLED
        assert "extract_elements" not in backend.calls
        assert "create_records" not in backend.calls


class TestMergeChunkScenes:

    def _context(self):
        return AnalysisContext(job_id="job_1", project_id="p", script_id="s", user_id="u")

    def _chunk(self, index, page_start=1):
        return ChunkData(
            id=f"job_1-chunk-{index}",
            chunk_index=index,
            chunk_text="",
            page_start=page_start,
            page_end=page_start + 2,
            scene_count=1,
        )

    def test_renumbers_restarted_numbering(self):
        context = self._context()
        merge_chunk_scenes(context, self._chunk(0), [
            ExtractedScene(scene_number="1", int_ext="int", set_name="Kitchen"),
            ExtractedScene(scene_number="2", int_ext="ext", set_name="Yard"),
        ])

        added = merge_chunk_scenes(context, self._chunk(1), [
            ExtractedScene(scene_number="1", int_ext="INT", set_name="Garage"),
        ])

        assert added == 1
        assert [s.scene_number for s in context.extracted_scenes] == ["1", "2", "3"]
        assert context.last_scene_number == 3

    def test_normalizes_and_drops_invalid(self):
        context = self._context()

        added = merge_chunk_scenes(context, self._chunk(0), [
            ExtractedScene(scene_number="1", int_ext="int/ext", set_name="Car", time_of_day="late night",
                           characters=[" anna ", ""]),
            ExtractedScene(scene_number="2", int_ext="INT", set_name="  "),
        ])

        assert added == 1
        scene = context.extracted_scenes[0]
        assert scene.int_ext == "BOTH"
        assert scene.time_of_day == "NIGHT"
        assert scene.characters == ["ANNA"]
        assert context.find_character("anna").scene_count == 1

    def test_drops_overlap_duplicates(self):
        context = self._context()
        merge_chunk_scenes(context, self._chunk(0), [
            ExtractedScene(scene_number="4", int_ext="INT", set_name="Kitchen"),
        ])

        added = merge_chunk_scenes(context, self._chunk(1), [
            ExtractedScene(scene_number="4", int_ext="INT", set_name="KITCHEN"),
            ExtractedScene(scene_number="5", int_ext="INT", set_name="Hall"),
        ])

        assert added == 1
        assert [s.scene_number for s in context.extracted_scenes] == ["4", "5"]

    def test_maps_chunk_pages(self):
        context = self._context()

        merge_chunk_scenes(context, self._chunk(1, page_start=10), [
            ExtractedScene(scene_number="1", int_ext="INT", set_name="Hall",
                           script_page_start=2, script_page_end=0),
        ])

        scene = context.extracted_scenes[0]
        assert scene.script_page_start == 11
        assert scene.script_page_end == 11


class TestEstimateSceneHours:

    def test_one_page_interior_day(self):
        scene = ExtractedScene(scene_number="1", int_ext="INT", set_name="Kitchen",
                               time_of_day="DAY", page_length_eighths=8)

        assert estimate_scene_hours(scene, []) == 2.0

    def test_exterior_night(self):
        scene = ExtractedScene(scene_number="1", int_ext="EXT", set_name="Road",
                               time_of_day="NIGHT", page_length_eighths=8)

        assert estimate_scene_hours(scene, []) == 3.0

    def test_clamped_to_bounds(self):
        short = ExtractedScene(scene_number="1", int_ext="INT", set_name="Hall", page_length_eighths=1)
        epic = ExtractedScene(scene_number="2", int_ext="EXT", set_name="Bridge", page_length_eighths=64)
        stunts = [ExtractedElement(category="STUNT", name="Fall"), ExtractedElement(category="VFX", name="Fire")]

        assert estimate_scene_hours(short, []) == 0.25
        assert estimate_scene_hours(epic, stunts) == 8.0
