"""
Global Exception Handling

Provides the exception hierarchy and structured JSON error responses.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from imagelift.core.logging import get_logger, job_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class ImageliftBaseException(Exception):
    """Base exception for imagelift."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.job_id = job_id or job_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(ImageliftBaseException):
    """Raised when an upload is rejected before a job is created."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class JobNotFoundError(ImageliftBaseException):
    """Raised when a job id is unknown to the store."""

    def __init__(self, job_id: str, **kwargs):
        super().__init__(f"Job not found: {job_id}", code=404, job_id=job_id, **kwargs)


class UnknownStageLabelError(ImageliftBaseException):
    """Raised when an artifact is requested for a label the job does not have."""

    def __init__(self, label: str, **kwargs):
        super().__init__(f"Unknown resolution label: {label}", code=404, stage=label, **kwargs)


class JobNotReadyError(ImageliftBaseException):
    """Raised when artifacts are requested before the job completed."""

    def __init__(self, job_id: str, status: str, **kwargs):
        super().__init__(
            f"Job {job_id} is not completed (status: {status})",
            code=409,
            job_id=job_id,
            **kwargs
        )
        self.details["status"] = status


class ArtifactMissingError(ImageliftBaseException):
    """Raised when a completed job's derivative is no longer in storage."""

    def __init__(self, job_id: str, label: str, storage_key: str, **kwargs):
        super().__init__(
            f"File not found: {label} derivative of job {job_id}",
            code=404,
            job_id=job_id,
            stage=label,
            **kwargs
        )
        self.details["storage_key"] = storage_key


class DuplicateJobError(ImageliftBaseException):
    """Raised when a job id collides with an existing job."""

    def __init__(self, job_id: str, **kwargs):
        super().__init__(f"Job already exists: {job_id}", code=409, job_id=job_id, **kwargs)


class TerminalJobError(ImageliftBaseException):
    """Raised when something tries to mutate a completed or failed job."""

    def __init__(self, job_id: str, status: str, **kwargs):
        super().__init__(
            f"Job {job_id} is terminal ({status}) and cannot be modified",
            code=409,
            job_id=job_id,
            **kwargs
        )
        self.details["status"] = status


class SourceUnavailableError(ImageliftBaseException):
    """Raised when the uploaded source cannot be read at pipeline start."""

    error_code = "SOURCE_UNAVAILABLE"

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


class RenderError(ImageliftBaseException):
    """Raised when the renderer rejects or fails on a stage's input."""

    error_code = "RENDER_ERROR"

    def __init__(self, message: str, code: int = 500, **kwargs):
        super().__init__(message, code=code, **kwargs)


class RenderTimeoutError(RenderError):
    """Raised when a render exceeds RENDER_TIMEOUT_SECONDS."""

    error_code = "TIMEOUT"

    def __init__(self, timeout_seconds: float, **kwargs):
        super().__init__(f"Render timed out after {timeout_seconds:g}s", code=504, **kwargs)
        self.details["timeout_seconds"] = timeout_seconds


class StorageError(ImageliftBaseException):
    """Raised when storage operations fail."""

    error_code = "STORAGE_ERROR"

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


# =============================================================================
# Exception Handlers
# =============================================================================

def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(ImageliftBaseException)
    async def imagelift_exception_handler(request: Request, exc: ImageliftBaseException):
        job_id = exc.job_id or job_id_var.get()

        log = logger.warning if exc.code < 500 else logger.error
        log(
            "imagelift_exception",
            error=exc.message,
            code=exc.code,
            stage=exc.stage,
            details=exc.details,
            path=str(request.url.path)
        )

        return JSONResponse(
            status_code=exc.code,
            content={
                "error": exc.message,
                "job_id": job_id,
                "code": exc.code,
                "stage": exc.stage,
                "details": exc.details,
                "timestamp": datetime.utcnow().isoformat() + "Z"
            }
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        job_id = job_id_var.get()

        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "job_id": job_id,
                "code": 500,
                "timestamp": datetime.utcnow().isoformat() + "Z"
            }
        )
