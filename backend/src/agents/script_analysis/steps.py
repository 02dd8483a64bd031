"""
Script-analysis pipeline steps.

Failure policy per step:
- parsing, chunking, extracting_scenes, creating_records: fatal
- extracting_elements, linking_cast, generating_synopses, estimating_time,
  suggesting_crew: best-effort (should_continue)

Steps read and write the AnalysisContext, report progress through the
tracker, and wrap every backend call in the retry handler. Only an
exhausted retry is turned into a failed StepResult here; anything
unexpected propagates to the orchestrator, which fails the job.
"""

import logging
import math
from dataclasses import asdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from src.agents.chunker import ScriptChunker
from src.agents.constants import (
    CHARS_PER_PAGE,
    CHUNK_BATCH_SIZE,
    MIN_SCRIPT_CHARS,
    PipelineStep,
)
from src.agents.errors import AgentError, AgentErrorCode, JobCancelledError, RetryExhaustedError
from src.agents.fanout import process_chunks_in_order
from src.agents.orchestrator import OrchestratorStep
from src.agents.progress import ProgressTracker
from src.agents.retry import OperationResult, RetryHandler
from src.agents.sanitize import normalize_script_text
from src.agents.script_analysis.backend import ScriptAnalysisBackend, SceneHint
from src.agents.script_analysis.estimate import estimate_scene_hours
from src.agents.script_analysis.scenes import (
    batched,
    merge_chunk_scenes,
    remember_location,
    scene_number_value,
    scenes_from_sluglines,
)
from src.agents.types import (
    AnalysisContext,
    ChunkData,
    ExtractedElement,
    ExtractedScene,
    StepResult,
)

logger = logging.getLogger(__name__)

ELEMENT_BATCH_SIZE = 10
SYNOPSIS_BATCH_SIZE = 15

# Synopses shorter than this are regenerated
MIN_SYNOPSIS_CHARS = 10

# Progress is reported every N scenes by the time estimator
ESTIMATE_PROGRESS_INTERVAL = 10


def _failed(
    error: str,
    should_continue: bool = False,
    cause: Optional[BaseException] = None,
    **details: Any,
) -> StepResult:
    if isinstance(cause, AgentError):
        details["code"] = cause.code.value
    return StepResult(
        success=False,
        error=error,
        error_details=details or None,
        should_continue=should_continue,
    )


class ScriptAnalysisSteps:
    """
    The nine steps of a script analysis run, bound to one backend.
    """

    def __init__(
        self,
        backend: ScriptAnalysisBackend,
        retry_handler: Optional[RetryHandler] = None,
        chunker: Optional[ScriptChunker] = None,
        batch_size: int = CHUNK_BATCH_SIZE,
    ):
        """
        Initialize steps.

        Args:
            backend: Collaborator doing the extraction and persistence work
            retry_handler: Retry wrapper for backend calls
            chunker: Chunker used by the chunking step
            batch_size: Concurrent backend calls per batch
        """
        self.backend = backend
        self.retry = retry_handler or RetryHandler()
        self.chunker = chunker or ScriptChunker()
        self.batch_size = max(1, batch_size)

    def pipeline(self) -> List[OrchestratorStep]:
        return [
            OrchestratorStep(PipelineStep.PARSING, self.parse),
            OrchestratorStep(PipelineStep.CHUNKING, self.chunk),
            OrchestratorStep(PipelineStep.EXTRACTING_SCENES, self.extract_scenes),
            OrchestratorStep(PipelineStep.EXTRACTING_ELEMENTS, self.extract_elements),
            OrchestratorStep(PipelineStep.LINKING_CAST, self.link_cast),
            OrchestratorStep(PipelineStep.GENERATING_SYNOPSES, self.generate_synopses),
            OrchestratorStep(PipelineStep.ESTIMATING_TIME, self.estimate_time),
            OrchestratorStep(PipelineStep.CREATING_RECORDS, self.create_records),
            OrchestratorStep(PipelineStep.SUGGESTING_CREW, self.suggest_crew),
        ]

    async def _run_batches(
        self,
        tracker: ProgressTracker,
        batches: Sequence[list],
        call: Callable[[list], Awaitable[Any]],
        label: str,
    ) -> List[OperationResult]:
        """Run one backend call per batch, batch_size at a time, in order."""
        results: List[OperationResult] = []
        total = len(batches)

        for start in range(0, total, self.batch_size):
            if tracker.token.is_cancelled:
                raise JobCancelledError(tracker.job_id)

            group = batches[start:start + self.batch_size]
            operations = [
                (_bind(call, batch), f"{label} {start + i + 1}/{total}")
                for i, batch in enumerate(group)
            ]
            results.extend(await self.retry.execute_all(
                operations,
                continue_on_error=True,
                concurrency=self.batch_size,
            ))
            await tracker.update_progress(len(results), total)

        return results

    # ------------------------------------------------------------------
    # parsing
    # ------------------------------------------------------------------

    async def parse(self, context: AnalysisContext, tracker: ProgressTracker) -> StepResult:
        await tracker.update_progress(0, 3, "Fetching script text")

        try:
            document = await self.retry.execute(
                lambda: self.backend.fetch_script_text(context.script_id),
                "fetch_script_text",
            )
        except RetryExhaustedError as e:
            return _failed(
                f"Failed to fetch script: {e.message}",
                cause=e,
                script_id=context.script_id,
            )

        await tracker.update_progress(1, 3, "Normalizing script text")

        if not document.text or not document.text.strip():
            return _failed(
                "Script contains no extractable text. It may be image-based (scanned).",
                code=AgentErrorCode.PARSE_ERROR.value,
                page_count=document.page_count,
            )

        normalized = normalize_script_text(document.text)
        if len(normalized) < MIN_SCRIPT_CHARS:
            return _failed(
                f"Script appears to be too short ({len(normalized)} characters extracted)",
                code=AgentErrorCode.PARSE_ERROR.value,
                extracted_length=len(normalized),
                page_count=document.page_count,
            )

        context.script_text = normalized
        context.total_pages = document.page_count or math.ceil(len(normalized) / CHARS_PER_PAGE)

        await tracker.update_progress(3, 3, "Parsing complete")

        logger.info(
            "Script parsed",
            extra={
                "job_id": context.job_id,
                "page_count": context.total_pages,
                "characters": len(normalized),
            },
        )
        return StepResult(
            success=True,
            data={"page_count": context.total_pages, "character_count": len(normalized)},
        )

    # ------------------------------------------------------------------
    # chunking
    # ------------------------------------------------------------------

    async def chunk(self, context: AnalysisContext, tracker: ProgressTracker) -> StepResult:
        if not context.script_text:
            return _failed("No script text available for chunking", code=AgentErrorCode.CHUNK_ERROR.value)

        await tracker.update_progress(0, 2, "Analyzing script structure")

        result = self.chunker.chunk(context.script_text)

        await tracker.update_progress(1, 2, f"Created {result.total_chunks} chunks")

        records = tracker.jobs.save_chunks(context.job_id, context.script_id, result.chunks)
        context.chunks = [
            ChunkData(
                id=record.id,
                chunk_index=chunk.index,
                chunk_text=chunk.text,
                page_start=chunk.page_start,
                page_end=chunk.page_end,
                scene_count=chunk.scene_count,
            )
            for chunk, record in zip(result.chunks, records)
        ]
        if not context.total_pages:
            context.total_pages = result.estimated_pages

        await tracker.update_progress(2, 2, "Chunking complete")

        return StepResult(
            success=True,
            data={
                "total_chunks": result.total_chunks,
                "total_characters": result.total_characters,
                "estimated_pages": result.estimated_pages,
                "scene_boundaries": len(result.scene_boundaries),
                "estimated_seconds": self.chunker.estimate_processing_time(result.total_chunks),
            },
        )

    # ------------------------------------------------------------------
    # extracting_scenes
    # ------------------------------------------------------------------

    async def extract_scenes(self, context: AnalysisContext, tracker: ProgressTracker) -> StepResult:
        chunks = sorted(context.chunks, key=lambda c: c.chunk_index)
        if not chunks:
            return _failed("No chunks available for scene extraction")

        total_chunks = len(chunks)
        pending = [c for c in chunks if not c.processed]

        async def extract(chunk: ChunkData) -> List[ExtractedScene]:
            hint = SceneHint(
                known_characters=[c.name for c in context.known_characters],
                last_scene_number=context.last_scene_number,
                chunk_index=chunk.chunk_index,
                total_chunks=total_chunks,
                page_start=chunk.page_start,
            )
            overlap = self.chunker.get_overlap_context(chunks, chunk.chunk_index)
            return await self.backend.extract_scenes(chunk.chunk_text, overlap, hint)

        def apply(chunk: ChunkData, scenes: List[ExtractedScene]) -> None:
            merge_chunk_scenes(context, chunk, scenes)

        summary = await process_chunks_in_order(
            pending,
            extract,
            apply,
            tracker,
            retry_handler=self.retry,
            batch_size=self.batch_size,
            serialize=lambda scenes: {"scenes": [asdict(s) for s in scenes]},
        )

        used_fallback = False
        if not context.extracted_scenes:
            fallback = scenes_from_sluglines(chunks, context.last_scene_number)
            if fallback:
                used_fallback = True
                for scene in fallback:
                    remember_location(context, scene)
                    context.last_scene_number = max(
                        context.last_scene_number, scene_number_value(scene.scene_number)
                    )
                context.extracted_scenes = fallback
                context.warnings.append(
                    f"Scene details were unavailable; recovered {len(fallback)} scenes from scene headings"
                )
                logger.warning(
                    "Scene extraction fell back to sluglines",
                    extra={"job_id": context.job_id, "scenes": len(fallback)},
                )

        if not context.extracted_scenes:
            return _failed(
                "No scenes could be extracted from the script",
                chunks_processed=summary.processed,
                failed_chunks=summary.failed,
                total_chunks=total_chunks,
                chunk_errors={str(k): v for k, v in summary.errors.items()},
            )

        if summary.failed:
            context.warnings.append(f"{summary.failed} of {total_chunks} chunks could not be analyzed")

        await tracker.update_progress(
            total_chunks, total_chunks, f"Extracted {len(context.extracted_scenes)} scenes"
        )

        return StepResult(
            success=True,
            data={
                "scenes_extracted": len(context.extracted_scenes),
                "characters_found": len(context.known_characters),
                "locations_found": len(context.known_locations),
                "failed_chunks": summary.failed,
                "used_slugline_fallback": used_fallback,
            },
        )

    # ------------------------------------------------------------------
    # extracting_elements
    # ------------------------------------------------------------------

    async def extract_elements(self, context: AnalysisContext, tracker: ProgressTracker) -> StepResult:
        scenes = context.extracted_scenes
        if not scenes:
            return _failed("No scenes available for element extraction", should_continue=True)

        batches = batched(scenes, ELEMENT_BATCH_SIZE)
        results = await self._run_batches(tracker, batches, self.backend.extract_elements, "elements")

        merged: Dict[tuple, ExtractedElement] = {}
        for outcome in results:
            if not outcome.success:
                continue
            for element in outcome.data or []:
                if not element.name:
                    continue
                key = (element.category, element.name.strip().upper())
                if key in merged:
                    existing = merged[key]
                    for number in element.scene_numbers:
                        if number not in existing.scene_numbers:
                            existing.scene_numbers.append(number)
                else:
                    merged[key] = element

        failed = sum(1 for r in results if not r.success)
        if failed == len(results):
            return _failed(
                "Element extraction failed for every batch",
                should_continue=True,
                cause=results[-1].error if results else None,
                failed_batches=failed,
            )
        if failed:
            context.warnings.append(f"{failed} of {len(results)} element batches could not be analyzed")

        context.extracted_elements = list(merged.values())
        for scene in scenes:
            scene.elements = [
                e for e in context.extracted_elements if scene.scene_number in e.scene_numbers
            ]

        return StepResult(
            success=True,
            data={"elements_found": len(context.extracted_elements), "failed_batches": failed},
        )

    # ------------------------------------------------------------------
    # linking_cast
    # ------------------------------------------------------------------

    async def link_cast(self, context: AnalysisContext, tracker: ProgressTracker) -> StepResult:
        if not context.extracted_scenes:
            return _failed("No scenes available for cast linking", should_continue=True)

        names = {c for scene in context.extracted_scenes for c in scene.characters}
        characters = [c for c in context.known_characters if c.name in names]
        if not characters:
            return StepResult(success=True, data={"cast_created": 0, "cast_linked": 0})

        await tracker.update_progress(0, 2, f"Matching {len(characters)} characters")

        try:
            linked = await self.retry.execute(
                lambda: self.backend.link_cast(context.project_id, characters),
                "link_cast",
            )
        except RetryExhaustedError as e:
            return _failed(f"Cast linking failed: {e.message}", should_continue=True, cause=e)

        context.linked_cast = linked
        context.created_cast_ids = [c.cast_member_id for c in linked if c.is_new]

        await tracker.update_progress(2, 2, f"Linked {len(linked)} cast members")

        return StepResult(
            success=True,
            data={
                "cast_created": len(context.created_cast_ids),
                "cast_linked": len(linked),
            },
        )

    # ------------------------------------------------------------------
    # generating_synopses
    # ------------------------------------------------------------------

    async def generate_synopses(self, context: AnalysisContext, tracker: ProgressTracker) -> StepResult:
        needing = [
            s for s in context.extracted_scenes
            if len((s.synopsis or "").strip()) < MIN_SYNOPSIS_CHARS
        ]
        if not needing:
            return StepResult(success=True, data={"synopses_generated": 0})

        batches = batched(needing, SYNOPSIS_BATCH_SIZE)
        results = await self._run_batches(tracker, batches, self.backend.generate_synopses, "synopses")

        generated = 0
        for batch, outcome in zip(batches, results):
            if not outcome.success:
                continue
            synopses = outcome.data or {}
            for scene in batch:
                synopsis = (synopses.get(scene.scene_number) or "").strip()
                if synopsis:
                    scene.synopsis = synopsis
                    generated += 1

        failed = sum(1 for r in results if not r.success)
        if failed == len(results):
            return _failed(
                "Synopsis generation failed for every batch",
                should_continue=True,
                cause=results[-1].error if results else None,
                failed_batches=failed,
            )

        return StepResult(success=True, data={"synopses_generated": generated, "failed_batches": failed})

    # ------------------------------------------------------------------
    # estimating_time
    # ------------------------------------------------------------------

    async def estimate_time(self, context: AnalysisContext, tracker: ProgressTracker) -> StepResult:
        scenes = context.extracted_scenes
        if not scenes:
            return _failed("No scenes available for time estimation", should_continue=True)

        total = len(scenes)
        for i, scene in enumerate(scenes):
            elements = [e for e in context.extracted_elements if scene.scene_number in e.scene_numbers]
            scene.estimated_hours = estimate_scene_hours(scene, elements)

            if i % ESTIMATE_PROGRESS_INTERVAL == 0:
                await tracker.update_progress(i + 1, total)

        await tracker.update_progress(total, total, f"Estimated {total} scenes")

        total_hours = sum(s.estimated_hours or 0 for s in scenes)
        return StepResult(
            success=True,
            data={
                "scenes_estimated": total,
                "total_hours": round(total_hours, 1),
                "average_hours_per_scene": round(total_hours / total, 2),
            },
        )

    # ------------------------------------------------------------------
    # creating_records
    # ------------------------------------------------------------------

    async def create_records(self, context: AnalysisContext, tracker: ProgressTracker) -> StepResult:
        if not context.extracted_scenes:
            return _failed("No scenes to save")

        await tracker.update_progress(0, 2, f"Saving {len(context.extracted_scenes)} scenes")

        try:
            records = await self.retry.execute(
                lambda: self.backend.create_records(context),
                "create_records",
            )
        except RetryExhaustedError as e:
            return _failed(f"Failed to save analysis results: {e.message}", cause=e)

        context.created_scene_ids = list(records.scene_ids)
        context.created_element_ids = list(records.element_ids)
        if records.cast_ids:
            context.created_cast_ids = list(records.cast_ids)

        await tracker.update_progress(2, 2, "Records created")

        return StepResult(
            success=True,
            data={
                "scenes_created": len(context.created_scene_ids),
                "elements_created": len(context.created_element_ids),
            },
        )

    # ------------------------------------------------------------------
    # suggesting_crew
    # ------------------------------------------------------------------

    async def suggest_crew(self, context: AnalysisContext, tracker: ProgressTracker) -> StepResult:
        if not context.extracted_elements:
            await tracker.update_progress(1, 1, "No crew suggestions for these elements")
            return StepResult(success=True, data={"roles_suggested": 0})

        try:
            roles = await self.retry.execute(
                lambda: self.backend.suggest_crew(context),
                "suggest_crew",
            )
        except RetryExhaustedError as e:
            return _failed(f"Crew suggestion failed: {e.message}", should_continue=True, cause=e)

        context.suggested_crew_roles = list(roles)
        await tracker.update_progress(1, 1, f"Suggested {len(roles)} crew roles")

        return StepResult(success=True, data={"roles_suggested": len(roles)})


def _bind(call: Callable[[list], Awaitable[Any]], batch: list) -> Callable[[], Awaitable[Any]]:
    async def run() -> Any:
        return await call(batch)
    return run
