"""
Tests for AgentOrchestrator.

Tests cover:
- Running a pipeline to completion and persisting context
- Best-effort steps (should_continue) vs fatal steps
- Retry exhaustion inside a step
- Cooperative cancellation at step boundaries
- Jobs reclaimed as stale while running
- Resuming from a later step
- Aggregate result warnings
- Background cancellation watcher
"""

import asyncio
from datetime import timedelta

import pytest
from unittest.mock import AsyncMock

from src.agents.cancellation import CancellationToken, CancellationWatcher
from src.agents.constants import AgentJobStatus, PipelineStep
from src.agents.errors import (
    AgentError,
    AgentErrorCode,
    JobCancelledError,
    JobReclaimedError,
    RetryExhaustedError,
    StepFailedError,
)
from src.agents.orchestrator import AgentOrchestrator, OrchestratorStep, init_context
from src.agents.retry import RetryHandler, RetryPolicy
from src.agents.types import ChunkData, ExtractedScene, StepResult
from src.models.agent_job import utcnow

THREE_STEPS = (PipelineStep.PARSING, PipelineStep.CHUNKING, PipelineStep.EXTRACTING_SCENES)


def _ok(marker):
    async def step(context, tracker):
        context.warnings.append(marker)
        return StepResult(success=True)
    return AsyncMock(side_effect=step)


def _pipeline(*executes):
    return [OrchestratorStep(step, execute) for step, execute in zip(THREE_STEPS, executes)]


@pytest.fixture
def job(make_job):
    return make_job(total_steps=3)


@pytest.fixture
def context(job):
    return init_context(job.id, job.project_id, job.script_id, job.user_id)


class TestRun:

    @pytest.mark.asyncio
    async def test_runs_all_steps_and_completes(self, job, context, job_manager):
        steps = _pipeline(_ok("one"), _ok("two"), _ok("three"))
        orchestrator = AgentOrchestrator(job.id, context, steps, job_manager)

        result = await orchestrator.run()

        stored = job_manager.get_job(job.id)
        assert stored.status == AgentJobStatus.COMPLETED
        assert stored.progress_percent == 100
        assert stored.current_step == 3
        assert stored.result["chunks_processed"] == 1
        assert stored.context["warnings"] == ["one", "two", "three"]
        assert result.warnings[:3] == ["one", "two", "three"]
        for step in steps:
            step.execute.assert_awaited_once_with(context, orchestrator.tracker)

    @pytest.mark.asyncio
    async def test_context_saved_after_each_step(self, job, context, job_manager):
        seen = []

        async def check_saved(ctx, tracker):
            seen.append(list(job_manager.get_job(job.id).context["warnings"]))
            return StepResult(success=True)

        steps = _pipeline(_ok("one"), AsyncMock(side_effect=check_saved), _ok("three"))

        await AgentOrchestrator(job.id, context, steps, job_manager).run()

        assert seen == [["one"]]

    @pytest.mark.asyncio
    async def test_should_continue_failure_does_not_fail_job(self, job, context, job_manager):
        optional = AsyncMock(return_value=StepResult(
            success=False,
            error="crew service down",
            should_continue=True,
        ))
        last = _ok("three")
        steps = _pipeline(_ok("one"), optional, last)

        result = await AgentOrchestrator(job.id, context, steps, job_manager).run()

        assert job_manager.get_job(job.id).status == AgentJobStatus.COMPLETED
        last.assert_awaited_once()
        assert "Splitting script into chunks did not finish: crew service down" in result.warnings

    @pytest.mark.asyncio
    async def test_fatal_failure_marks_job_failed(self, job, context, job_manager):
        fatal = AsyncMock(return_value=StepResult(
            success=False,
            error="Script text is empty",
            error_details={"code": "PARSE_ERROR"},
        ))
        never = _ok("three")
        steps = _pipeline(_ok("one"), fatal, never)

        with pytest.raises(StepFailedError) as exc_info:
            await AgentOrchestrator(job.id, context, steps, job_manager).run()

        assert exc_info.value.step == "chunking"
        never.assert_not_awaited()
        stored = job_manager.get_job(job.id)
        assert stored.status == AgentJobStatus.FAILED
        assert stored.error_message == "Script text is empty"
        assert stored.error_details == {
            "code": "PARSE_ERROR",
            "step": "chunking",
            "last_successful_step": 1,
            "last_successful_step_name": "parsing",
        }

    @pytest.mark.asyncio
    async def test_first_step_failure_has_no_successful_step(self, job, context, job_manager):
        fatal = AsyncMock(return_value=StepResult(success=False))
        steps = _pipeline(fatal, _ok("two"), _ok("three"))

        with pytest.raises(StepFailedError):
            await AgentOrchestrator(job.id, context, steps, job_manager).run()

        stored = job_manager.get_job(job.id)
        assert stored.error_message == "Step parsing failed"
        assert stored.error_details["last_successful_step"] == 0
        assert stored.error_details["last_successful_step_name"] is None

    @pytest.mark.asyncio
    async def test_rate_limited_step_retried_then_failed(self, job, context, job_manager):
        sleep = AsyncMock()
        handler = RetryHandler(RetryPolicy(max_retries=3, jitter_factor=0.0), sleep=sleep)
        call = AsyncMock(side_effect=Exception("rate limit exceeded"))

        async def rate_limited(ctx, tracker):
            try:
                await handler.execute(call, "extract scenes")
            except RetryExhaustedError as e:
                return StepResult(success=False, error=str(e), error_details={"code": e.code.value})
            return StepResult(success=True)

        steps = _pipeline(_ok("one"), AsyncMock(side_effect=rate_limited), _ok("three"))

        with pytest.raises(StepFailedError):
            await AgentOrchestrator(job.id, context, steps, job_manager).run()

        assert call.await_count == 4
        delays = [c.args[0] for c in sleep.await_args_list]
        assert delays == [1.0, 2.0, 4.0]
        stored = job_manager.get_job(job.id)
        assert stored.status == AgentJobStatus.FAILED
        assert stored.error_message == "[extract scenes] rate limit exceeded"
        assert stored.error_details["last_successful_step"] == 1
        assert stored.error_details["code"] == "LLM_RATE_LIMIT"

    @pytest.mark.asyncio
    async def test_step_exception_persisted_and_reraised(self, job, context, job_manager):
        broken = AsyncMock(side_effect=AgentError("bad chunk bounds", code=AgentErrorCode.CHUNK_ERROR))
        steps = _pipeline(_ok("one"), broken, _ok("three"))

        with pytest.raises(AgentError):
            await AgentOrchestrator(job.id, context, steps, job_manager).run()

        stored = job_manager.get_job(job.id)
        assert stored.status == AgentJobStatus.FAILED
        assert stored.error_message == "bad chunk bounds"
        assert stored.error_details == {
            "last_successful_step": 1,
            "last_successful_step_name": "parsing",
            "code": "CHUNK_ERROR",
        }

    def test_requires_steps(self, job, context, job_manager):
        with pytest.raises(AgentError):
            AgentOrchestrator(job.id, context, [], job_manager)


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_takes_effect_at_next_step(self, job, context, job_manager):
        async def cancel_mid_step(ctx, tracker):
            job_manager.cancel_job(job.id)
            return StepResult(success=True)

        never = _ok("three")
        steps = _pipeline(_ok("one"), AsyncMock(side_effect=cancel_mid_step), never)

        with pytest.raises(JobCancelledError):
            await AgentOrchestrator(job.id, context, steps, job_manager).run()

        never.assert_not_awaited()
        stored = job_manager.get_job(job.id)
        assert stored.status == AgentJobStatus.CANCELLED
        assert stored.error_message is None

    @pytest.mark.asyncio
    async def test_token_cancels_before_first_step(self, job, context, job_manager):
        token = CancellationToken()
        token.cancel()
        first = _ok("one")
        steps = _pipeline(first, _ok("two"), _ok("three"))

        with pytest.raises(JobCancelledError):
            await AgentOrchestrator(job.id, context, steps, job_manager, token=token).run()

        first.assert_not_awaited()


class TestReclaimedJob:

    @staticmethod
    def _reclaimed_mid_step(job_manager, job_id):
        async def step(ctx, tracker):
            job_manager.update_job(job_id, {"started_at": utcnow() - timedelta(minutes=15)})
            assert job_manager.cancel_stale_jobs() == 1
            return StepResult(success=True)
        return AsyncMock(side_effect=step)

    @pytest.mark.asyncio
    async def test_stale_reclaim_stops_run_at_next_step(self, job, context, job_manager):
        never = _ok("three")
        steps = _pipeline(_ok("one"), self._reclaimed_mid_step(job_manager, job.id), never)

        with pytest.raises(JobReclaimedError) as exc_info:
            await AgentOrchestrator(job.id, context, steps, job_manager).run()

        assert exc_info.value.code == AgentErrorCode.JOB_RECLAIMED
        assert exc_info.value.status == "failed"
        never.assert_not_awaited()
        stored = job_manager.get_job(job.id)
        assert stored.status == AgentJobStatus.FAILED
        assert stored.error_details["reason"] == "stale"
        assert stored.result is None

    @pytest.mark.asyncio
    async def test_reclaim_during_last_step_is_not_reported_complete(self, job, context, job_manager):
        steps = _pipeline(_ok("one"), _ok("two"), self._reclaimed_mid_step(job_manager, job.id))

        with pytest.raises(JobReclaimedError):
            await AgentOrchestrator(job.id, context, steps, job_manager).run()

        stored = job_manager.get_job(job.id)
        assert stored.status == AgentJobStatus.FAILED
        assert stored.result is None
        assert stored.progress_percent < 100


class TestResume:

    @pytest.mark.asyncio
    async def test_resume_skips_completed_steps(self, job, context, job_manager):
        first, second, third = _ok("one"), _ok("two"), _ok("three")
        orchestrator = AgentOrchestrator(job.id, context, _pipeline(first, second, third), job_manager)

        await orchestrator.resume_from(2)

        first.assert_not_awaited()
        second.assert_not_awaited()
        third.assert_awaited_once()
        stored = job_manager.get_job(job.id)
        assert stored.status == AgentJobStatus.COMPLETED
        assert stored.context["warnings"] == ["three"]

    @pytest.mark.asyncio
    async def test_resume_failure_counts_skipped_steps(self, job, context, job_manager):
        fatal = AsyncMock(return_value=StepResult(success=False, error="boom"))
        orchestrator = AgentOrchestrator(
            job.id, context, _pipeline(_ok("one"), _ok("two"), fatal), job_manager
        )

        with pytest.raises(StepFailedError):
            await orchestrator.resume_from(2)

        assert job_manager.get_job(job.id).error_details["last_successful_step"] == 2

    @pytest.mark.asyncio
    async def test_invalid_index(self, job, context, job_manager):
        orchestrator = AgentOrchestrator(
            job.id, context, _pipeline(_ok("one"), _ok("two"), _ok("three")), job_manager
        )

        with pytest.raises(AgentError) as exc_info:
            await orchestrator.resume_from(3)

        assert exc_info.value.code == AgentErrorCode.VALIDATION_ERROR


class TestBuildResult:

    def _orchestrator(self, job, context, job_manager):
        return AgentOrchestrator(
            job.id, context, _pipeline(_ok("one"), _ok("two"), _ok("three")), job_manager
        )

    def test_empty_context_warnings(self, job, context, job_manager):
        result = self._orchestrator(job, context, job_manager).build_result()

        assert "No scenes were extracted from the script" in result.warnings
        assert "No production elements were identified" in result.warnings
        assert result.chunks_processed == 1
        assert result.total_chunks == 1

    def test_counts_and_missing_data_warnings(self, job, context, job_manager):
        context.extracted_scenes = [
            ExtractedScene(scene_number="1", int_ext="INT", set_name="KITCHEN", synopsis="Ann cooks.", estimated_hours=1.0),
            ExtractedScene(scene_number="2", int_ext="EXT", set_name="YARD"),
            ExtractedScene(scene_number="3", int_ext="EXT", set_name="ROAD", synopsis="A chase."),
        ]
        context.chunks = [
            ChunkData(id="c0", chunk_index=0, chunk_text="a", page_start=1, page_end=1, scene_count=2, processed=True),
            ChunkData(id="c1", chunk_index=1, chunk_text="b", page_start=2, page_end=2, scene_count=1),
        ]
        context.created_scene_ids = ["s1", "s2", "s3"]

        result = self._orchestrator(job, context, job_manager).build_result()

        assert result.scenes_created == 3
        assert result.synopses_generated == 2
        assert result.time_estimates_generated == 1
        assert result.chunks_processed == 1
        assert result.total_chunks == 2
        assert "1 scenes are missing synopses" in result.warnings
        assert "2 scenes are missing time estimates" in result.warnings


class TestCancellationWatcher:

    @pytest.mark.asyncio
    async def test_sets_token_once_cancelled(self):
        token = CancellationToken()
        check = AsyncMock(side_effect=[False, False, True])

        async with CancellationWatcher(check, token, poll_seconds=0):
            await asyncio.wait_for(token.wait(), timeout=1)

        assert token.is_cancelled
        assert check.await_count == 3

    @pytest.mark.asyncio
    async def test_check_errors_are_retried(self):
        token = CancellationToken()
        check = AsyncMock(side_effect=[RuntimeError("db gone"), True])

        async with CancellationWatcher(check, token, poll_seconds=0):
            await asyncio.wait_for(token.wait(), timeout=1)

        assert token.is_cancelled

    @pytest.mark.asyncio
    async def test_stop_leaves_token_untouched(self):
        token = CancellationToken()
        watcher = CancellationWatcher(AsyncMock(return_value=False), token, poll_seconds=0)

        watcher.start()
        await asyncio.sleep(0)
        await watcher.stop()
        await watcher.stop()

        assert not token.is_cancelled
