"""Members service routers package."""

from services.members_service.routers.admin import router as admin_router

__all__ = [
    "admin_router",
]
