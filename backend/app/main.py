"""FastAPI application."""

from fastapi import FastAPI

from backend.app.api.routes.health import router as health_router
from backend.app.api.routes.resources import router as resources_router
from backend.app.config import get_settings
from backend.app.middleware.tenant_context import TenantContextMiddleware
from backend.app.utils.logging import configure_logging

settings = get_settings()
configure_logging(settings.log_level)

app = FastAPI(title="School Platform API", version="0.1.0")
app.add_middleware(TenantContextMiddleware, tenant_header=settings.tenant_header)

# Register routes
app.include_router(health_router, tags=["health"])
app.include_router(resources_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {"message": "School Platform API", "version": "0.1.0"}
