"""
Process-wide service container.

Built once in the application lifespan from AuthzSettings and stored on
app.state.services. Long-lived state (per-identity reconciliation locks,
background remediations, impersonation overlays) lives on these instances
rather than in module globals.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request, status
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from authz.auth.actor_context import ClerkSessionVerifier
from authz.config.settings import AuthzSettings
from authz.database.session import create_db_engine, create_session_factory
from authz.db_base import Base
from authz.services.clerk_identity_source import ClerkIdentitySource
from authz.services.diagnostic_workflow import DiagnosticWorkflow
from authz.services.impersonation import ImpersonationOverlay
from authz.services.reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)


@dataclass
class AuthzServices:
    settings: AuthzSettings
    engine: Optional[Engine]
    session_factory: Optional[sessionmaker]
    identity_source: ClerkIdentitySource
    reconciliation: ReconciliationEngine
    workflow: DiagnosticWorkflow
    impersonation: ImpersonationOverlay
    session_verifier: Optional[ClerkSessionVerifier] = None

    @classmethod
    def build(
        cls,
        settings: AuthzSettings,
        engine: Optional[Engine] = None,
        identity_source: Optional[ClerkIdentitySource] = None,
        session_verifier: Optional[ClerkSessionVerifier] = None,
        create_tables: bool = False,
    ) -> "AuthzServices":
        """
        Wire all services from settings.

        Args:
            settings: Runtime settings
            engine: Existing engine (tests); otherwise built from DATABASE_URL
            identity_source: Existing Clerk adapter (tests)
            session_verifier: Existing JWT verifier (tests)
            create_tables: Create missing tables (local development and tests)
        """
        if engine is None and settings.database_url:
            engine = create_db_engine(settings.database_url)
        session_factory = create_session_factory(engine) if engine is not None else None
        if engine is not None and create_tables:
            Base.metadata.create_all(bind=engine)

        if identity_source is None:
            identity_source = ClerkIdentitySource(
                settings.clerk_secret_key,
                api_url=settings.clerk_api_url,
                max_retries=settings.identity_source_max_retries,
                timeout=settings.identity_source_timeout_seconds,
            )
        if session_verifier is None and settings.clerk_frontend_api:
            session_verifier = ClerkSessionVerifier(settings.clerk_frontend_api)

        reconciliation = ReconciliationEngine(session_factory, identity_source)
        services = cls(
            settings=settings,
            engine=engine,
            session_factory=session_factory,
            identity_source=identity_source,
            reconciliation=reconciliation,
            workflow=DiagnosticWorkflow(
                reconciliation,
                client_timeout_seconds=settings.diagnostic_client_timeout_seconds,
                remediation_timeout_seconds=settings.remediation_timeout_seconds,
            ),
            impersonation=ImpersonationOverlay(
                ttl_seconds=settings.impersonation_ttl_seconds,
                max_ttl_seconds=settings.impersonation_max_ttl_seconds,
            ),
            session_verifier=session_verifier,
        )
        logger.info(
            "Authz services initialized",
            extra={
                "database": "configured" if session_factory is not None else "missing",
                "session_verification": "configured" if session_verifier else "missing",
            },
        )
        return services

    async def close(self) -> None:
        await self.workflow.shutdown()
        await self.identity_source.close()
        if self.engine is not None:
            self.engine.dispose()


def get_services(request: Request) -> AuthzServices:
    """FastAPI dependency for the service container. Raises 503 before startup."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return services
