"""
Pipeline Dispatchers

Submission hands a job id to a dispatcher and returns immediately; the
dispatcher starts the executor without waiting for it. The job store is the
only channel back to the caller.

- AsyncioDispatcher: one asyncio task per job inside the API process
- CeleryDispatcher: one Celery task per job on the render queue
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Set

from imagelift.core.logging import get_logger, LogContext
from imagelift.pipeline.executor import PipelineExecutor

logger = get_logger(__name__)


class IPipelineDispatcher(ABC):
    """Starts pipeline runs without awaiting them."""

    @abstractmethod
    async def dispatch(self, job_id: str) -> str:
        """Schedule the pipeline for `job_id` and return a task identifier."""
        pass

    async def shutdown(self, timeout: float = 10.0):
        """Stop accepting work and release resources."""
        pass


class AsyncioDispatcher(IPipelineDispatcher):
    """Runs each job as a fire-and-forget task on the running event loop."""

    def __init__(self, executor: PipelineExecutor):
        self.executor = executor
        # Strong references so running tasks are not garbage collected
        self._tasks: Set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def dispatch(self, job_id: str) -> str:
        task = asyncio.create_task(self._run(job_id), name=f"enhance-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task.get_name()

    async def _run(self, job_id: str):
        with LogContext(job_id=job_id):
            try:
                await self.executor.run(job_id)
            except asyncio.CancelledError:
                logger.warning("pipeline_task_cancelled")
                raise
            except Exception as e:
                # Nobody awaits this task, so this is the last place to see the error
                logger.exception("pipeline_task_crashed", error=str(e), error_type=type(e).__name__)

    async def drain(self):
        """Wait until every dispatched job has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float = 10.0):
        """Give running jobs `timeout` seconds, then cancel the rest."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        logger.info("dispatcher_shutting_down", in_flight=len(pending))
        done, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("dispatcher_cancelled_jobs", cancelled=len(still_running))


class CeleryDispatcher(IPipelineDispatcher):
    """Hands jobs to Celery workers; requires a job store shared with them."""

    async def dispatch(self, job_id: str) -> str:
        from imagelift.pipeline.tasks import run_enhancement_pipeline

        # apply_async talks to the broker synchronously
        result = await asyncio.to_thread(run_enhancement_pipeline.apply_async, args=[job_id])
        logger.info("pipeline_task_enqueued", job_id=job_id, task_id=result.id)
        return str(result.id)
