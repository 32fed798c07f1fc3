"""
API v1 Router Module

All v1 endpoints are prefixed with /api/v1/

- /api/v1/enhance - upload, artifact lookup and download
- /api/v1/status - job status polling
- /api/v1/metrics - Prometheus metrics
"""

from fastapi import APIRouter

from imagelift.api.v1.enhance import router as enhance_router
from imagelift.api.v1.status import router as status_router
from imagelift.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(enhance_router, prefix="/enhance", tags=["enhance"])
api_v1_router.include_router(status_router, prefix="/status", tags=["status"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
