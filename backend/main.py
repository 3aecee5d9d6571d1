"""
FastAPI application entry point for the CareerHub authorization service.

Roles come from Clerk (source of truth) and are cached locally; every
protected route resolves the caller through authz.auth.actor_context and is
guarded by authz.platform.rbac.require_permission.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from authz.api.routes import admin_roles
from authz.api.routes import audit_logs
from authz.api.routes import impersonation
from authz.api.routes import permissions
from authz.api.routes import webhooks_clerk
from authz.config.settings import AuthzSettings
from authz.constants.permissions import validate_permission_matrix
from authz.services.container import AuthzServices

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(services: Optional[AuthzServices] = None) -> FastAPI:
    """
    Build the application.

    Args:
        services: Pre-built service container (tests). When omitted the
            container is built from the environment at startup and torn
            down at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting CareerHub authz API")

        # Refuse to start with a broken permission matrix
        validate_permission_matrix()

        owns_services = getattr(app.state, "services", None) is None
        if owns_services:
            settings = AuthzSettings.from_env()
            if not settings.database_url:
                logger.error(
                    "DATABASE_URL is not set. All authenticated endpoints will return 503."
                )
            if not settings.clerk_frontend_api:
                logger.warning(
                    "Clerk authentication not configured (missing: CLERK_FRONTEND_API). "
                    "Protected endpoints will return 503."
                )
            app.state.services = AuthzServices.build(
                settings,
                create_tables=bool(settings.database_url and settings.database_url.startswith("sqlite")),
            )

        yield

        if owns_services:
            await app.state.services.close()
            app.state.services = None
        logger.info("Shutting down CareerHub authz API")

    app = FastAPI(
        title="CareerHub Authz API",
        description="Role reconciliation, permission checks and role audit trail",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", include_in_schema=False)
    async def health():
        return {"status": "ok"}

    app.include_router(webhooks_clerk.router)
    app.include_router(admin_roles.router)
    app.include_router(audit_logs.router)
    app.include_router(impersonation.router)
    app.include_router(permissions.router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
