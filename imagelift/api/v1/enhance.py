"""
Enhance Endpoint - Upload and Artifact Retrieval

POST /api/v1/enhance - Upload an image and start the 4K/8K pipeline
GET  /api/v1/enhance/{job_id}/artifacts/{label} - Resolve a finished derivative
GET  /api/v1/enhance/{job_id}/download/{label} - Download a finished derivative
"""

from typing import Optional

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel

from imagelift.api.dependencies import get_enhancement_service, get_storage
from imagelift.core.logging import get_logger
from imagelift.core.storage import IStorage
from imagelift.modules.enhancement.services import EnhancementService

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Response Schemas
# =============================================================================

class SubmitResponse(BaseModel):
    """Response from the upload endpoint."""
    job_id: str
    status: str = "QUEUED"
    message: str
    original_filename: Optional[str] = None
    status_url: str


class ArtifactResponse(BaseModel):
    """A finished derivative of a job."""
    job_id: str
    label: str
    target_width: int
    storage_key: str
    url: Optional[str] = None
    download_url: str


# =============================================================================
# Endpoints
# =============================================================================

@router.post("", response_model=SubmitResponse, status_code=202)
async def submit_image(
    image: UploadFile = File(...),
    service: EnhancementService = Depends(get_enhancement_service)
):
    """
    Upload an image for 4K and 8K enhancement.

    Returns immediately with a job id; poll /api/v1/status/{job_id}
    until the job is COMPLETED or FAILED.
    """
    file_content = await image.read()

    job_id = await service.submit(
        file_content,
        filename=image.filename,
        content_type=image.content_type
    )

    return SubmitResponse(
        job_id=job_id,
        message="Upload successful. Processing started.",
        original_filename=image.filename,
        status_url=f"/api/v1/status/{job_id}"
    )


@router.get("/{job_id}/artifacts/{label}", response_model=ArtifactResponse)
async def get_artifact(
    job_id: str,
    label: str,
    service: EnhancementService = Depends(get_enhancement_service),
    storage: IStorage = Depends(get_storage)
):
    """
    Resolve the storage reference of a finished derivative.

    404 for an unknown job or label, 409 while the job is not COMPLETED.
    """
    artifact = await service.artifact_ref(job_id, label)

    url = None
    try:
        url = await storage.get_url(artifact.storage_key)
    except FileNotFoundError as e:
        logger.warning("artifact_url_unavailable", job_id=job_id, label=label, error=str(e))

    return ArtifactResponse(
        job_id=job_id,
        label=artifact.label,
        target_width=artifact.target_width,
        storage_key=artifact.storage_key,
        url=url,
        download_url=f"/api/v1/enhance/{job_id}/download/{label}"
    )


@router.get("/{job_id}/download/{label}")
async def download_artifact(
    job_id: str,
    label: str,
    service: EnhancementService = Depends(get_enhancement_service)
):
    """Download a finished derivative as a JPEG attachment."""
    artifact, content = await service.read_artifact(job_id, label)
    filename = f"{job_id}_{artifact.label}.jpg"

    return Response(
        content=content,
        media_type="image/jpeg",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )
