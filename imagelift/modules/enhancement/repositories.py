"""
Job Store Repositories

The job store is the single shared mutable structure of the pipeline:
- InMemoryJobStore: process-local dict guarded by an asyncio lock (default)
- SQLJobStore: SQLModel table, shared between the API and Celery workers

Both hand out deep copies, so a snapshot held by a caller never changes
under it, and both apply updates as a whole or not at all.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select

from imagelift.core.exceptions import DuplicateJobError, JobNotFoundError, TerminalJobError
from imagelift.modules.enhancement.models import EnhancementJobRecord, Job, JobStatus

JobMutation = Callable[[Job], None]


class IJobStore(ABC):
    """Interface for job state persistence."""

    @abstractmethod
    async def create(self, job: Job) -> str:
        """Insert a new QUEUED job. Raises DuplicateJobError on id collision."""
        pass

    @abstractmethod
    async def get(self, job_id: str) -> Job:
        """Return a snapshot of the job. Raises JobNotFoundError."""
        pass

    @abstractmethod
    async def update(self, job_id: str, mutation: JobMutation) -> Job:
        """
        Atomically apply `mutation` to the stored job.

        The mutation runs against a working copy which is committed only if
        it returns without raising. Terminal jobs are never mutated.

        Returns:
            Snapshot of the committed job.

        Raises:
            JobNotFoundError: unknown id
            TerminalJobError: job already COMPLETED or FAILED
        """
        pass

    @abstractmethod
    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        limit: int = 20,
        offset: int = 0
    ) -> List[Job]:
        """Return jobs, newest first."""
        pass

    @abstractmethod
    async def count(self, status: Optional[JobStatus] = None) -> int:
        pass


def _check_new_job(job: Job):
    if job.status != JobStatus.QUEUED or job.progress != 0:
        raise ValueError(f"New jobs must be QUEUED with progress 0 (got {job.status.value}, {job.progress})")


def _apply_mutation(job_id: str, job: Job, mutation: JobMutation):
    if job.is_terminal:
        raise TerminalJobError(job_id, job.status.value)
    mutation(job)
    if job.id != job_id:
        raise ValueError(f"Mutation changed job identity ({job_id} -> {job.id})")


class InMemoryJobStore(IJobStore):
    """Process-wide job table held in memory for the lifetime of the app."""

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock = asyncio.Lock()

    async def create(self, job: Job) -> str:
        _check_new_job(job)
        async with self._lock:
            if job.id in self._jobs:
                raise DuplicateJobError(job.id)
            self._jobs[job.id] = job.model_copy(deep=True)
        return job.id

    async def get(self, job_id: str) -> Job:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job.model_copy(deep=True)

    async def update(self, job_id: str, mutation: JobMutation) -> Job:
        async with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            working = current.model_copy(deep=True)
            _apply_mutation(job_id, working, mutation)
            self._jobs[job_id] = working
            return working.model_copy(deep=True)

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        limit: int = 20,
        offset: int = 0
    ) -> List[Job]:
        async with self._lock:
            jobs = [job for job in self._jobs.values() if status is None or job.status == status]
            jobs.sort(key=lambda job: job.created_at, reverse=True)
            return [job.model_copy(deep=True) for job in jobs[offset:offset + limit]]

    async def count(self, status: Optional[JobStatus] = None) -> int:
        async with self._lock:
            return sum(1 for job in self._jobs.values() if status is None or job.status == status)


class SQLJobStore(IJobStore):
    """Job table persisted through SQLModel on an async engine."""

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker

    async def create(self, job: Job) -> str:
        _check_new_job(job)
        async with self._session_maker() as session:
            statement = select(EnhancementJobRecord.id).where(EnhancementJobRecord.id == job.id)
            result = await session.execute(statement)
            if result.scalar_one_or_none() is not None:
                raise DuplicateJobError(job.id)

            session.add(EnhancementJobRecord.from_job(job))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise DuplicateJobError(job.id)
        return job.id

    async def get(self, job_id: str) -> Job:
        async with self._session_maker() as session:
            statement = select(EnhancementJobRecord).where(EnhancementJobRecord.id == job_id)
            result = await session.execute(statement)
            record = result.scalar_one_or_none()
            if record is None:
                raise JobNotFoundError(job_id)
            return record.to_job()

    async def update(self, job_id: str, mutation: JobMutation) -> Job:
        async with self._session_maker() as session:
            async with session.begin():
                statement = (
                    select(EnhancementJobRecord)
                    .where(EnhancementJobRecord.id == job_id)
                    .with_for_update()
                )
                result = await session.execute(statement)
                record = result.scalar_one_or_none()
                if record is None:
                    raise JobNotFoundError(job_id)

                job = record.to_job()
                _apply_mutation(job_id, job, mutation)
                record.apply(job)
                session.add(record)
            return job

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        limit: int = 20,
        offset: int = 0
    ) -> List[Job]:
        async with self._session_maker() as session:
            statement = select(EnhancementJobRecord)
            if status is not None:
                statement = statement.where(EnhancementJobRecord.status == status.value)
            statement = (
                statement.order_by(EnhancementJobRecord.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            result = await session.execute(statement)
            return [record.to_job() for record in result.scalars().all()]

    async def count(self, status: Optional[JobStatus] = None) -> int:
        async with self._session_maker() as session:
            statement = select(func.count()).select_from(EnhancementJobRecord)
            if status is not None:
                statement = statement.where(EnhancementJobRecord.status == status.value)
            result = await session.execute(statement)
            return int(result.scalar_one())
