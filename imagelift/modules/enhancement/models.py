"""
Enhancement Job Model with Pipeline Status Tracking

Tracks one submitted image through its resolution stages:
- Per-stage target width, result key and timing
- Monotonic progress
- Terminal state and error tracking
- Ownership of the uploaded source until it is released
"""

import uuid
from enum import Enum
from datetime import datetime
from typing import Optional, Dict, Any, List, Sequence, Tuple

from pydantic import BaseModel, Field as PydanticField
from sqlmodel import SQLModel, Field, Column, JSON


class JobStatus(str, Enum):
    """Pipeline job status states."""
    QUEUED = "QUEUED"           # Job created, pipeline not started
    RENDERING = "RENDERING"     # Rendering the stage at stage_index
    COMPLETED = "COMPLETED"     # All stages rendered, source released
    FAILED = "FAILED"           # Pipeline stopped, source released


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class FailureCode(str, Enum):
    """Machine-readable cause recorded alongside a failed job's error."""
    SOURCE_UNAVAILABLE = "SOURCE_UNAVAILABLE"
    RENDER_ERROR = "RENDER_ERROR"
    TIMEOUT = "TIMEOUT"
    STORAGE_ERROR = "STORAGE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    CANCELLED = "CANCELLED"


def stage_progress(index: int, total: int) -> int:
    """Progress reported while stage `index` of `total` is rendering."""
    return round(index / total * 100)


class StageDescriptor(BaseModel):
    """One resolution tier of a job."""
    label: str
    target_width: int
    result: Optional[str] = None
    duration_ms: Optional[int] = None


class ArtifactRef(BaseModel):
    """A rendered derivative, addressable by its storage key."""
    label: str
    target_width: int
    storage_key: str


class JobView(BaseModel):
    """Read-only projection of a job handed to pollers."""
    job_id: str
    status: JobStatus
    stage_index: Optional[int] = None
    current_stage: Optional[str] = None
    progress: int
    artifacts: Optional[List[ArtifactRef]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    original_filename: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


class Job(BaseModel):
    """
    Processing record of one submitted image.

    Mutated only by the pipeline executor, through the job store. The
    transition methods refuse anything that would move progress backwards
    or touch a job that already reached COMPLETED or FAILED.
    """
    id: str = PydanticField(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.QUEUED
    stage_index: Optional[int] = None
    progress: int = 0
    stages: List[StageDescriptor]
    error: Optional[str] = None
    error_code: Optional[str] = None
    source_ref: Optional[str] = None
    source_released: bool = False
    original_filename: Optional[str] = None
    content_type: Optional[str] = None
    created_at: datetime = PydanticField(default_factory=datetime.utcnow)
    updated_at: datetime = PydanticField(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        source_ref: str,
        tiers: Sequence[Tuple[str, int]],
        original_filename: Optional[str] = None,
        content_type: Optional[str] = None
    ) -> "Job":
        """Create a queued job with one stage per (label, width) tier, smallest first."""
        ordered = sorted(tiers, key=lambda tier: tier[1])
        if not ordered:
            raise ValueError("A job needs at least one stage")
        labels = [label for label, _ in ordered]
        if len(set(labels)) != len(labels):
            # Labels name artifacts, so they must be unique within a job
            raise ValueError(f"Duplicate stage labels: {labels}")
        return cls(
            source_ref=source_ref,
            stages=[StageDescriptor(label=label, target_width=width) for label, width in ordered],
            original_filename=original_filename,
            content_type=content_type,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def current_stage(self) -> Optional[str]:
        if self.stage_index is None:
            return None
        return self.stages[self.stage_index].label

    def stage_for_label(self, label: str) -> Optional[StageDescriptor]:
        for stage in self.stages:
            if stage.label == label:
                return stage
        return None

    def _touch(self):
        self.updated_at = datetime.utcnow()

    def _set_progress(self, value: int):
        if value < self.progress:
            raise ValueError(f"Progress cannot decrease ({self.progress} -> {value})")
        self.progress = value

    def _ensure_active(self):
        if self.is_terminal:
            raise ValueError(f"Job {self.id} is already {self.status.value}")

    def mark_stage_started(self, index: int):
        """Move to RENDERING(index); stages start strictly in order."""
        self._ensure_active()
        expected = 0 if self.stage_index is None else self.stage_index + 1
        if index != expected:
            raise ValueError(f"Stage {index} started out of order (expected {expected})")
        if index > 0 and self.stages[index - 1].result is None:
            raise ValueError(f"Stage {index} started before stage {index - 1} succeeded")
        if self.started_at is None:
            self.started_at = datetime.utcnow()
        self.status = JobStatus.RENDERING
        self.stage_index = index
        self._set_progress(stage_progress(index, len(self.stages)))
        self._touch()

    def record_stage_result(self, index: int, storage_key: str, duration_ms: Optional[int] = None):
        """Store the artifact key of the stage currently rendering."""
        self._ensure_active()
        if self.status != JobStatus.RENDERING or self.stage_index != index:
            raise ValueError(f"Stage {index} is not the stage being rendered")
        stage = self.stages[index]
        stage.result = storage_key
        stage.duration_ms = duration_ms
        self._touch()

    def mark_source_released(self):
        if self.source_released:
            raise ValueError(f"Source of job {self.id} was already released")
        self.source_released = True
        self._touch()

    def mark_completed(self):
        self._ensure_active()
        missing = [stage.label for stage in self.stages if stage.result is None]
        if missing:
            raise ValueError(f"Cannot complete with unrendered stages: {', '.join(missing)}")
        self.status = JobStatus.COMPLETED
        self._set_progress(100)
        self.completed_at = datetime.utcnow()
        self._touch()

    def mark_failed(self, error_message: str, error_code: str):
        self._ensure_active()
        self.status = JobStatus.FAILED
        self.error = error_message or "Unknown error"
        self.error_code = error_code
        self.completed_at = datetime.utcnow()
        self._touch()

    def artifacts(self) -> List[ArtifactRef]:
        return [
            ArtifactRef(label=stage.label, target_width=stage.target_width, storage_key=stage.result)
            for stage in self.stages
            if stage.result is not None
        ]

    def to_view(self) -> JobView:
        """Project the job for pollers; artifacts only once COMPLETED, error only once FAILED."""
        completed = self.status == JobStatus.COMPLETED
        failed = self.status == JobStatus.FAILED
        return JobView(
            job_id=self.id,
            status=self.status,
            stage_index=self.stage_index if self.status == JobStatus.RENDERING else None,
            current_stage=self.current_stage if self.status == JobStatus.RENDERING else None,
            progress=self.progress,
            artifacts=self.artifacts() if completed else None,
            error=self.error if failed else None,
            error_code=self.error_code if failed else None,
            original_filename=self.original_filename,
            created_at=self.created_at,
            updated_at=self.updated_at,
            completed_at=self.completed_at,
        )


class EnhancementJobRecord(SQLModel, table=True):
    """Durable row for a Job, used by SQLJobStore."""
    __tablename__ = "enhancement_jobs"

    id: str = Field(primary_key=True)
    status: str = Field(default=JobStatus.QUEUED.value, index=True)
    stage_index: Optional[int] = None
    progress: int = Field(default=0)

    # Structure: [{label, target_width, result, duration_ms}, ...]
    stages: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))

    error: Optional[str] = None
    error_code: Optional[str] = None
    source_ref: Optional[str] = None
    source_released: bool = Field(default=False)
    original_filename: Optional[str] = None
    content_type: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: Job) -> "EnhancementJobRecord":
        record = cls(id=job.id)
        record.apply(job)
        return record

    def apply(self, job: Job):
        """Copy a job's state onto this row."""
        self.status = job.status.value
        self.stage_index = job.stage_index
        self.progress = job.progress
        # Replace the list so SQLAlchemy detects the change
        self.stages = [stage.model_dump() for stage in job.stages]
        self.error = job.error
        self.error_code = job.error_code
        self.source_ref = job.source_ref
        self.source_released = job.source_released
        self.original_filename = job.original_filename
        self.content_type = job.content_type
        self.created_at = job.created_at
        self.updated_at = job.updated_at
        self.started_at = job.started_at
        self.completed_at = job.completed_at

    def to_job(self) -> Job:
        return Job(
            id=self.id,
            status=JobStatus(self.status),
            stage_index=self.stage_index,
            progress=self.progress,
            stages=[StageDescriptor(**stage) for stage in (self.stages or [])],
            error=self.error,
            error_code=self.error_code,
            source_ref=self.source_ref,
            source_released=self.source_released,
            original_filename=self.original_filename,
            content_type=self.content_type,
            created_at=self.created_at,
            updated_at=self.updated_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )
