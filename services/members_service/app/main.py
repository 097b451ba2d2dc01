"""FastAPI application for the Members admin service."""

from fastapi import FastAPI

from libs.common.middleware import add_observability_middleware
from services.members_service.routers import admin_router


def create_app() -> FastAPI:
    """Create and configure the Members admin FastAPI app."""
    app = FastAPI(
        title="Gym Members Admin Service",
        version="0.1.0",
        description="Member administration: status lifecycle, mutations and cached views.",
    )

    add_observability_middleware(app)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "members"}

    app.include_router(admin_router)

    return app


app = create_app()
