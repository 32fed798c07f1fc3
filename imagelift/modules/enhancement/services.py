"""
Enhancement Services

- StatusQueryService: read-only access to job state for pollers
- EnhancementService: the boundary used by the transport layer
  (submit, status, artifact_ref, read_artifact)
"""

from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from imagelift.core.exceptions import (
    ArtifactMissingError,
    DuplicateJobError,
    JobNotReadyError,
    StorageError,
    UnknownStageLabelError,
    ValidationError,
)
from imagelift.core.logging import get_logger, LogContext
from imagelift.core.metrics import jobs_submitted_total, record_source_release
from imagelift.core.storage import IStorage
from imagelift.modules.enhancement.models import ArtifactRef, FailureCode, Job, JobStatus, JobView
from imagelift.modules.enhancement.repositories import IJobStore
from imagelift.pipeline.dispatch import IPipelineDispatcher

logger = get_logger(__name__)

CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}


class StatusQueryService:
    """Read-only view over the job store. Never caches, never mutates."""

    def __init__(self, store: IJobStore):
        self.store = store

    async def query(self, job_id: str) -> JobView:
        job = await self.store.get(job_id)
        return job.to_view()

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Tuple[List[JobView], int]:
        offset = (page - 1) * page_size
        jobs = await self.store.list_jobs(status=status, limit=page_size, offset=offset)
        total = await self.store.count(status=status)
        return [job.to_view() for job in jobs], total


class EnhancementService:
    """Accepts uploads, starts their pipelines and resolves finished artifacts."""

    def __init__(
        self,
        store: IJobStore,
        storage: IStorage,
        dispatcher: IPipelineDispatcher,
        tiers: Sequence[Tuple[str, int]],
        max_upload_size_bytes: int = 52428800,
        allowed_content_types: Optional[Sequence[str]] = None,
        upload_folder: str = "uploads"
    ):
        self.store = store
        self.storage = storage
        self.dispatcher = dispatcher
        self.tiers = sorted(tiers, key=lambda tier: tier[1])
        self.max_upload_size_bytes = max_upload_size_bytes
        self.allowed_content_types = list(allowed_content_types or CONTENT_TYPE_EXTENSIONS)
        self.upload_folder = upload_folder
        self.status_service = StatusQueryService(store)

    @property
    def labels(self) -> List[str]:
        return [label for label, _ in self.tiers]

    def _validate_upload(self, source_bytes: bytes, content_type: Optional[str]):
        if not source_bytes:
            raise ValidationError("No file uploaded")
        if len(source_bytes) > self.max_upload_size_bytes:
            max_mb = self.max_upload_size_bytes / (1024 * 1024)
            raise ValidationError(
                f"File too large. Maximum size is {max_mb:.0f}MB.",
                details={"size_bytes": len(source_bytes), "max_bytes": self.max_upload_size_bytes}
            )
        if content_type is not None and content_type not in self.allowed_content_types:
            raise ValidationError(
                "Invalid file type. Only JPG, PNG, and WebP are allowed.",
                details={"content_type": content_type, "allowed": self.allowed_content_types}
            )

    @staticmethod
    def _upload_name(filename: Optional[str], content_type: Optional[str]) -> str:
        if filename and Path(filename).suffix:
            return filename
        return "upload" + CONTENT_TYPE_EXTENSIONS.get(content_type or "", "")

    async def submit(
        self,
        source_bytes: bytes,
        filename: Optional[str] = None,
        content_type: Optional[str] = None
    ) -> str:
        """
        Store the upload, create a QUEUED job and start its pipeline.

        Returns as soon as the pipeline is scheduled; callers poll status()
        for progress.
        """
        self._validate_upload(source_bytes, content_type)

        source_ref = await self.storage.upload(
            source_bytes,
            self._upload_name(filename, content_type),
            folder=self.upload_folder,
            content_type=content_type or "application/octet-stream"
        )
        job = Job.new(
            source_ref=source_ref,
            tiers=self.tiers,
            original_filename=filename,
            content_type=content_type
        )

        with LogContext(job_id=job.id):
            try:
                await self.store.create(job)
            except DuplicateJobError:
                await self.storage.delete(source_ref)
                raise

            jobs_submitted_total.inc()
            logger.info(
                "job_submitted",
                source_ref=source_ref,
                size_bytes=len(source_bytes),
                content_type=content_type,
                stages=self.labels
            )

            try:
                task_id = await self.dispatcher.dispatch(job.id)
            except Exception as e:
                logger.error("pipeline_dispatch_failed", error=str(e), error_type=type(e).__name__)
                await self._abandon(job, f"Pipeline dispatch failed: {e}")
                raise

            logger.info("pipeline_dispatched", task_id=task_id)
        return job.id

    async def _abandon(self, job: Job, message: str):
        """Fail a job whose pipeline never started, releasing its upload."""
        try:
            deleted = await self.storage.delete(job.source_ref)
            record_source_release(True)
            logger.info("source_released", source_ref=job.source_ref, deleted=deleted)
        except (OSError, StorageError) as e:
            record_source_release(False)
            logger.error("source_release_failed", source_ref=job.source_ref, error=str(e))

        def fail(j: Job):
            j.mark_source_released()
            j.mark_failed(message, FailureCode.INTERNAL_ERROR.value)

        await self.store.update(job.id, fail)

    async def status(self, job_id: str) -> JobView:
        return await self.status_service.query(job_id)

    async def artifact_ref(self, job_id: str, label: str) -> ArtifactRef:
        """
        Resolve the storage reference of a finished stage.

        Raises:
            JobNotFoundError: unknown job id
            UnknownStageLabelError: label is not one of the job's stages
            JobNotReadyError: the job has not completed
        """
        job = await self.store.get(job_id)
        stage = job.stage_for_label(label)
        if stage is None:
            raise UnknownStageLabelError(label, job_id=job_id, details={"labels": [s.label for s in job.stages]})
        if job.status != JobStatus.COMPLETED:
            raise JobNotReadyError(job_id, job.status.value)
        return ArtifactRef(label=stage.label, target_width=stage.target_width, storage_key=stage.result)

    async def read_artifact(self, job_id: str, label: str) -> Tuple[ArtifactRef, bytes]:
        """Return a finished derivative and its bytes; ArtifactMissingError if storage lost it."""
        artifact = await self.artifact_ref(job_id, label)
        try:
            content = await self.storage.read(artifact.storage_key)
        except FileNotFoundError:
            logger.error("artifact_missing", job_id=job_id, stage=label, storage_key=artifact.storage_key)
            raise ArtifactMissingError(job_id, artifact.label, artifact.storage_key)
        return artifact, content
