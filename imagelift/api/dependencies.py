"""
FastAPI Dependencies

The application lifespan builds one job store, storage backend, dispatcher
and service per process and keeps them on app.state; these helpers hand
them to route handlers through Depends().
"""

from fastapi import Request

from imagelift.core.storage import IStorage
from imagelift.modules.enhancement.services import EnhancementService, StatusQueryService


def get_enhancement_service(request: Request) -> EnhancementService:
    return request.app.state.enhancement_service


def get_status_service(request: Request) -> StatusQueryService:
    return request.app.state.enhancement_service.status_service


def get_storage(request: Request) -> IStorage:
    return request.app.state.storage
