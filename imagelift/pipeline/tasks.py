"""
Celery Tasks for the Enhancement Pipeline

Used when PIPELINE_BACKEND=celery. The worker runs the same executor as the
in-process backend, against the SQL job store it shares with the API.
"""

import asyncio
from typing import Dict, Any

from imagelift.core.celery_app import celery_app
from imagelift.core.config import settings
from imagelift.core.database import create_engine_for, create_session_maker, create_db_and_tables
from imagelift.core.logging import get_logger, set_job_context, clear_job_context
from imagelift.core.storage import create_storage
from imagelift.modules.enhancement.repositories import SQLJobStore
from imagelift.pipeline.executor import create_executor

logger = get_logger(__name__)


async def _run_pipeline(job_id: str):
    engine = create_engine_for(settings.DATABASE_URL)
    try:
        await create_db_and_tables(engine)
        store = SQLJobStore(create_session_maker(engine))
        executor = create_executor(settings, store, create_storage(settings))
        return await executor.run(job_id)
    finally:
        await engine.dispose()


@celery_app.task(
    bind=True,
    name="imagelift.pipeline.tasks.run_enhancement_pipeline",
    max_retries=0,
    acks_late=True
)
def run_enhancement_pipeline(self, job_id: str) -> Dict[str, Any]:
    """
    Celery task running every stage of one job.

    A redelivered task finds the job already started and returns without
    rendering again.
    """
    set_job_context(job_id)

    try:
        logger.info("task_pipeline_started", task_id=self.request.id)

        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            job = loop.run_until_complete(_run_pipeline(job_id))
        finally:
            loop.close()

        logger.info("task_pipeline_finished", status=job.status.value, progress=job.progress)

        return {
            "job_id": job_id,
            "status": job.status.value,
            "progress": job.progress,
            "error": job.error,
        }

    finally:
        clear_job_context()
