"""
Status Endpoint - Job Status Tracking

GET /api/v1/status/{job_id} - Get current status of an enhancement job
GET /api/v1/status - List jobs with pagination
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from imagelift.api.dependencies import get_status_service
from imagelift.modules.enhancement.models import JobStatus, JobView
from imagelift.modules.enhancement.services import StatusQueryService

router = APIRouter()


class JobListResponse(BaseModel):
    """List of jobs response."""
    jobs: List[JobView]
    total: int
    page: int
    page_size: int


@router.get("/{job_id}", response_model=JobView)
async def get_job_status(
    job_id: str,
    status_service: StatusQueryService = Depends(get_status_service)
):
    """
    Get the current status of an enhancement job.

    Optimized for frequent polling. Artifacts are listed once the job is
    COMPLETED; the error is included once it is FAILED.
    """
    return await status_service.query(job_id)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    status: Optional[JobStatus] = Query(None),
    status_service: StatusQueryService = Depends(get_status_service)
):
    """List jobs, newest first."""
    jobs, total = await status_service.list_jobs(status=status, page=page, page_size=page_size)
    return JobListResponse(jobs=jobs, total=total, page=page, page_size=page_size)
