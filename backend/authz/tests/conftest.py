"""
Root test configuration and fixtures.

Provides:
- db_engine / session_factory / db_session: SQLite in-memory database
- fake_clerk: in-memory Clerk Backend API served through httpx.MockTransport
- identity_source: ClerkIdentitySource wired to fake_clerk (no retry delay)
- seed_record: insert a RoleRecord directly
- webhook_secret / sign_webhook: Svix-signed webhook headers
- services / api_client: app wired to the fixtures above, auth overridden
"""

import base64
import hashlib
import hmac
import json
import os
import re
import time
from typing import Any, Optional

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from authz.auth.actor_context import AuthenticatedIdentity, get_authenticated_identity
from authz.config.settings import AuthzSettings
from authz.db_base import Base
from authz.models.role_audit_log import RoleAuditLogEntry  # noqa: F401 - registers table
from authz.models.role_record import RoleRecord
from authz.services.clerk_identity_source import ClerkIdentitySource
from authz.services.container import AuthzServices
from main import create_app

# Set test environment
os.environ.setdefault("ENV", "test")

CLERK_TEST_API_URL = "https://api.clerk.test/v1"
BASE_UPDATED_AT_MS = 1_700_000_000_000


@pytest.fixture
def db_engine():
    """SQLite in-memory engine with all tables, fresh per test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


class FakeClerk:
    """
    Minimal in-memory Clerk Backend API.

    Supports GET /users/{id}, GET /users?email_address=..., and
    PATCH /users/{id}/metadata. Failures can be queued per method.
    """

    def __init__(self):
        self.users: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.failures: dict[str, list[Any]] = {"GET": [], "PATCH": []}
        self._clock = BASE_UPDATED_AT_MS

    def _tick(self) -> int:
        self._clock += 1000
        return self._clock

    def add_user(
        self,
        user_id: str,
        email: str,
        role: Optional[Any] = None,
        university_id: Optional[str] = None,
        first_name: str = "Test",
        last_name: str = "User",
    ) -> dict[str, Any]:
        metadata: dict[str, Any] = {}
        if role is not None:
            metadata["role"] = role
        if university_id is not None:
            metadata["university_id"] = university_id
        user = {
            "id": user_id,
            "email_addresses": [{"id": f"email_{user_id}", "email_address": email}],
            "primary_email_address_id": f"email_{user_id}",
            "first_name": first_name,
            "last_name": last_name,
            "public_metadata": metadata,
            "updated_at": self._tick(),
        }
        self.users[user_id] = user
        return user

    def set_role(self, user_id: str, role: Optional[Any], university_id: Optional[str] = None):
        """Change the role directly in Clerk (e.g. from the Clerk dashboard)."""
        metadata = self.users[user_id]["public_metadata"]
        metadata.pop("role", None)
        metadata.pop("university_id", None)
        if role is not None:
            metadata["role"] = role
        if university_id is not None:
            metadata["university_id"] = university_id
        self.users[user_id]["updated_at"] = self._tick()

    def role_of(self, user_id: str) -> Optional[Any]:
        return self.users[user_id]["public_metadata"].get("role")

    def fail_next(self, method: str, *failures: Any) -> None:
        """Queue failures: an int status code or an exception instance."""
        self.failures[method].extend(failures)

    def count(self, method: str) -> int:
        return sum(1 for r in self.requests if r.method == method)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        queued = self.failures.get(request.method)
        if queued:
            failure = queued.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return httpx.Response(failure, json={"errors": [{"message": "injected"}]})

        path = request.url.path
        if path.startswith("/v1"):
            path = path[3:]

        if request.method == "GET" and path == "/users":
            email = request.url.params.get("email_address", "").lower()
            matches = [
                u for u in self.users.values()
                if any(e["email_address"].lower() == email for e in u["email_addresses"])
            ]
            return httpx.Response(200, json=matches)

        match = re.fullmatch(r"/users/([^/]+)(/metadata)?", path)
        if not match:
            return httpx.Response(404, json={"errors": [{"message": "not found"}]})

        user = self.users.get(match.group(1))
        if user is None:
            return httpx.Response(404, json={"errors": [{"message": "not found"}]})

        if request.method == "GET" and not match.group(2):
            return httpx.Response(200, json=user)

        if request.method == "PATCH" and match.group(2):
            body = json.loads(request.content)
            for key, value in (body.get("public_metadata") or {}).items():
                if value is None:
                    user["public_metadata"].pop(key, None)
                else:
                    user["public_metadata"][key] = value
            user["updated_at"] = self._tick()
            return httpx.Response(200, json=user)

        return httpx.Response(405)


@pytest.fixture
def fake_clerk() -> FakeClerk:
    return FakeClerk()


@pytest.fixture
def identity_source(fake_clerk):
    """ClerkIdentitySource backed by fake_clerk, retrying without delay."""
    return ClerkIdentitySource(
        "sk_test_123",
        api_url=CLERK_TEST_API_URL,
        base_delay_seconds=0,
        transport=httpx.MockTransport(fake_clerk.handler),
    )


@pytest.fixture
def seed_record(db_session):
    """Factory inserting a RoleRecord directly (bypassing the audit log)."""

    def _seed(
        identity_id: str,
        role: str,
        tenant_id: Optional[str] = None,
        email: Optional[str] = None,
        display_name: Optional[str] = "Test User",
        source_updated_at: Optional[int] = None,
    ) -> RoleRecord:
        record = RoleRecord(
            identity_id=identity_id,
            email=email or f"{identity_id}@example.com",
            display_name=display_name,
            role=role,
            tenant_id=tenant_id,
            source_updated_at=source_updated_at,
            remediation_pending=False,
        )
        db_session.add(record)
        db_session.commit()
        return record

    return _seed


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "security: security-focused tests")


# =============================================================================
# Webhooks
# =============================================================================

@pytest.fixture
def webhook_secret():
    """Test webhook secret."""
    return "whsec_" + base64.b64encode(b"test_secret_key_12345").decode()


@pytest.fixture
def sign_webhook(webhook_secret):
    """Build Svix headers for a payload, signed like Clerk does."""

    def _sign(payload: bytes, svix_id: str = "msg_test_1", timestamp: Optional[int] = None) -> dict:
        ts = str(timestamp if timestamp is not None else int(time.time()))
        secret_key = base64.b64decode(webhook_secret[6:])
        signed_content = f"{svix_id}.{ts}.".encode() + payload
        computed = hmac.new(secret_key, signed_content, hashlib.sha256)
        signature = base64.b64encode(computed.digest()).decode()
        return {
            "svix-id": svix_id,
            "svix-timestamp": ts,
            "svix-signature": f"v1,{signature}",
        }

    return _sign


# =============================================================================
# Application
# =============================================================================

@pytest.fixture
def authz_settings(webhook_secret):
    return AuthzSettings(
        clerk_secret_key="sk_test_123",
        clerk_api_url=CLERK_TEST_API_URL,
        clerk_webhook_secret=webhook_secret,
        diagnostic_client_timeout_seconds=2.0,
        remediation_timeout_seconds=30.0,
    )


@pytest.fixture
def services(authz_settings, db_engine, identity_source):
    return AuthzServices.build(authz_settings, engine=db_engine, identity_source=identity_source)


@pytest.fixture
def api_client(services):
    """
    Factory for a TestClient authenticated as the given identity.

    Session JWT verification is overridden; the role still comes from the
    role store, so the identity needs a seeded RoleRecord.
    """
    clients = []

    def _client(identity_id: Optional[str] = None, session_id: str = "sess_test") -> TestClient:
        app = create_app(services)
        if identity_id is not None:
            app.dependency_overrides[get_authenticated_identity] = lambda: AuthenticatedIdentity(
                identity_id=identity_id, session_id=session_id
            )
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _client

    for client in clients:
        client.__exit__(None, None, None)
