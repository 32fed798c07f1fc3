"""
Pipeline Executor

Drives one job through its resolution stages:
1. Read the uploaded source
2. Render each stage in ascending width order, one at a time
3. Write each derivative to storage before recording it on the job
4. Release the uploaded source, then publish COMPLETED or FAILED

The source is released exactly once from a finally block, and the terminal
status is only published after the release. Nothing is retried here; a
failed job is retried by submitting the image again.
"""

import asyncio
import time
from typing import NamedTuple, Optional

from imagelift.core.exceptions import (
    RenderError,
    RenderTimeoutError,
    SourceUnavailableError,
    StorageError,
    TerminalJobError,
)
from imagelift.core.logging import get_logger, LogContext
from imagelift.core.metrics import (
    track_stage_latency,
    track_active_job,
    record_job_completion,
    record_render_failure,
    record_source_release,
)
from imagelift.core.storage import IStorage
from imagelift.modules.enhancement.models import FailureCode, Job, JobStatus
from imagelift.modules.enhancement.repositories import IJobStore
from imagelift.pipeline.renderer import Renderer, create_renderer

logger = get_logger(__name__)


class StageFailure(NamedTuple):
    """Why a pipeline run stopped early."""
    code: str
    message: str
    stage: Optional[str] = None


class PipelineExecutor:
    """
    Runs the enhancement pipeline for jobs held in a job store.

    The executor is the only writer of a job once it has been submitted.
    One instance can serve many concurrent jobs; it keeps no per-job state.
    """

    def __init__(
        self,
        store: IJobStore,
        storage: IStorage,
        renderer: Renderer,
        output_folder: str = "output",
        render_timeout: Optional[float] = None
    ):
        self.store = store
        self.storage = storage
        self.renderer = renderer
        self.output_folder = output_folder
        self.render_timeout = render_timeout

    async def run(self, job_id: str) -> Job:
        """Run the pipeline for a QUEUED job and return its terminal snapshot."""
        with LogContext(job_id=job_id):
            job = await self.store.get(job_id)
            if job.status != JobStatus.QUEUED:
                logger.warning("pipeline_already_started", status=job.status.value)
                return job

            logger.info("pipeline_started", stages=[stage.label for stage in job.stages])
            start_time = time.time()
            failure: Optional[StageFailure] = None
            with track_active_job():
                try:
                    failure = await self._run_stages(job)
                except asyncio.CancelledError:
                    failure = StageFailure(FailureCode.CANCELLED.value, "Pipeline cancelled before completion")
                    raise
                except Exception as e:
                    logger.exception("pipeline_unexpected_error", error=str(e), error_type=type(e).__name__)
                    failure = StageFailure(FailureCode.INTERNAL_ERROR.value, f"Internal error: {e}")
                finally:
                    await self._release_source(job_id)
                    final_job = await self._publish_terminal(job_id, failure, time.time() - start_time)
            return final_job

    async def _run_stages(self, job: Job) -> Optional[StageFailure]:
        try:
            source_bytes = await self._read_source(job)
        except SourceUnavailableError as e:
            logger.error("source_unavailable", source_ref=job.source_ref, error=e.message)
            return StageFailure(FailureCode.SOURCE_UNAVAILABLE.value, e.message)

        total = len(job.stages)
        for index, stage in enumerate(job.stages):
            with LogContext(stage=stage.label):
                started = await self.store.update(job.id, lambda j, i=index: j.mark_stage_started(i))
                logger.info(
                    "stage_started",
                    stage_index=index,
                    total_stages=total,
                    target_width=stage.target_width,
                    progress=started.progress
                )

                stage_start = time.time()
                try:
                    with track_stage_latency(stage.label):
                        output_bytes = await self._render(source_bytes, stage.target_width, stage.label)
                        storage_key = await self._write_artifact(job.id, stage.label, output_bytes)
                except (RenderError, StorageError) as e:
                    duration_ms = int((time.time() - stage_start) * 1000)
                    logger.error(
                        "stage_failed",
                        stage_index=index,
                        error=e.message,
                        error_code=e.error_code,
                        duration_ms=duration_ms
                    )
                    record_render_failure(stage.label, e.error_code)
                    return StageFailure(e.error_code, f"{stage.label} stage failed: {e.message}", stage.label)

                duration_ms = int((time.time() - stage_start) * 1000)
                await self.store.update(
                    job.id,
                    lambda j, i=index, key=storage_key, ms=duration_ms: j.record_stage_result(i, key, ms)
                )
                logger.info(
                    "stage_completed",
                    stage_index=index,
                    storage_key=storage_key,
                    output_size=len(output_bytes),
                    duration_ms=duration_ms
                )
        return None

    async def _read_source(self, job: Job) -> bytes:
        if not job.source_ref:
            raise SourceUnavailableError("Job has no source image")
        try:
            return await self.storage.read(job.source_ref)
        except FileNotFoundError:
            raise SourceUnavailableError(f"Source image not found: {job.source_ref}")
        except (OSError, StorageError) as e:
            raise SourceUnavailableError(f"Source image unreadable: {e}")

    async def _render(self, source_bytes: bytes, target_width: int, label: str) -> bytes:
        """Run the renderer off the event loop, bounded by the render timeout."""
        call = asyncio.to_thread(self.renderer.render, source_bytes, target_width)
        try:
            if self.render_timeout:
                output_bytes = await asyncio.wait_for(call, timeout=self.render_timeout)
            else:
                output_bytes = await call
        except asyncio.TimeoutError:
            # The worker thread cannot be interrupted; its result is discarded
            raise RenderTimeoutError(self.render_timeout, stage=label)
        except RenderError as e:
            e.stage = label
            raise
        except Exception as e:
            raise RenderError(f"{type(e).__name__}: {e}", stage=label)

        if not output_bytes:
            raise RenderError("Renderer returned no image data", stage=label)
        return output_bytes

    async def _write_artifact(self, job_id: str, label: str, output_bytes: bytes) -> str:
        storage_key = f"{self.output_folder}/{job_id}_{label}.jpg"
        return await self.storage.save(output_bytes, storage_key, content_type="image/jpeg")

    async def _release_source(self, job_id: str):
        """Delete the uploaded source once. Failures are logged, never raised."""
        job = await self.store.get(job_id)
        if job.source_released or job.is_terminal:
            return

        if job.source_ref:
            try:
                deleted = await self.storage.delete(job.source_ref)
                record_source_release(True)
                logger.info("source_released", source_ref=job.source_ref, deleted=deleted)
            except (OSError, StorageError) as e:
                record_source_release(False)
                logger.error("source_release_failed", source_ref=job.source_ref, error=str(e))

        await self.store.update(job_id, lambda j: j.mark_source_released())

    async def _publish_terminal(
        self,
        job_id: str,
        failure: Optional[StageFailure],
        duration_seconds: float
    ) -> Job:
        try:
            if failure is None:
                final_job = await self.store.update(job_id, lambda j: j.mark_completed())
            else:
                final_job = await self.store.update(
                    job_id, lambda j: j.mark_failed(failure.message, failure.code)
                )
        except TerminalJobError:
            logger.warning("pipeline_terminal_state_already_set")
            return await self.store.get(job_id)

        if failure is None:
            record_job_completion("completed", duration_seconds=duration_seconds)
            logger.info(
                "job_completed",
                artifacts=[artifact.storage_key for artifact in final_job.artifacts()],
                duration_ms=int(duration_seconds * 1000)
            )
        else:
            record_job_completion(
                "failed",
                failure_stage=failure.stage or "source",
                duration_seconds=duration_seconds
            )
            logger.warning(
                "job_failed",
                error=failure.message,
                error_code=failure.code,
                failed_stage=failure.stage,
                duration_ms=int(duration_seconds * 1000)
            )
        return final_job


def create_executor(settings, store: IJobStore, storage: IStorage, renderer: Optional[Renderer] = None) -> PipelineExecutor:
    """Build an executor from settings."""
    return PipelineExecutor(
        store=store,
        storage=storage,
        renderer=renderer or create_renderer(settings),
        output_folder=settings.OUTPUT_FOLDER,
        render_timeout=settings.RENDER_TIMEOUT_SECONDS
    )
