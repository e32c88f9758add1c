"""
tests/conftest.py -- Shared test fixtures for Gatekeeper tests.

This module provides:
  - make_test_stores(): isolated named shared-memory DBs for UserStore + RoleStore
  - _patch_lifespan(): wires test stores and a gate into app.state, bypassing real startup
  - api_client: TestClient plus seeded users (admin, developer, plain user) and their tokens

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool and the resolver reads
the store through asyncio.to_thread. Plain :memory: DBs are per-connection and
would present a blank schema to each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

Environment must be set before any core/auth import so get_settings() sees it:
DEBUG auto-generates SECRET_KEY, ALLOWED_HOSTS admits TestClient's
"testserver" host, and the rate limits are raised so a module's worth of
requests from one client IP is never throttled.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: set before any core/auth import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("API_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_gate
from auth.models import User
from auth.store import RoleStore, UserStore
from auth.tokens import create_session_token, hash_password
from core.config import get_settings
from core.models import UserRoleAssignment
from core.registry import ROUTE_PERMISSIONS

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_test_stores(db_suffix: str = "") -> tuple[UserStore, RoleStore]:
    """Create a UserStore and RoleStore sharing one isolated in-memory database.

    Args:
        db_suffix: Appended to the DB name; a random one is used when empty so
                   tests never see each other's rows.
    """
    name = f"test_gatekeeper_{db_suffix or uuid.uuid4().hex}"
    url = f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true"
    return UserStore(db_url=url), RoleStore(db_url=url)


def add_user(
    user_store: UserStore,
    role_store: RoleStore,
    email: str,
    roles: tuple[str, ...] = (),
    password: str = "testpass123",
    organization_id: str | None = None,
) -> int:
    """Create a user and assign the named global roles. Returns the user id."""
    uid = user_store.create_user(User(email=email, hashed_password=hash_password(password)))
    for name in roles:
        role = role_store.find_role(name)
        role_store.assign_role(UserRoleAssignment(user_id=uid, role_id=role.id, organization_id=organization_id))
    return uid


def _patch_lifespan(user_store: UserStore, role_store: RoleStore):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores and a gate over them into app.state so
    TestClient routes see isolated test DBs rather than the configured one.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.role_store = role_store
        app.state.registry = list(ROUTE_PERMISSIONS)
        app.state.gate = build_gate(user_store, role_store, app.state.registry)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


def auth_headers(token: str, organization_id: str | None = None) -> dict[str, str]:
    headers = {"Authorization": f"Bearer {token}"}
    if organization_id:
        headers["x-organization-id"] = organization_id
    return headers


@pytest.fixture
def settings():
    """The cached Settings instance; monkeypatch attributes on it per test."""
    return get_settings()


# ---------------------------------------------------------------------------
# Module-scoped API fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@dataclass
class ApiEnv:
    client: TestClient
    user_store: UserStore
    role_store: RoleStore
    admin_id: int
    admin_token: str
    developer_id: int
    developer_token: str
    user_id: int
    user_token: str


@pytest.fixture(scope="module")
def api_client(request) -> Generator[ApiEnv, None, None]:
    """Yield an ApiEnv for API integration tests.

    Seeded users (password "testpass123"):
      admin@example.com      Platform Admin ("*")
      dev@example.com        Developer
      user@example.com       User
    Tokens are long-lived session JWTs for Authorization headers.
    """
    user_store, role_store = make_test_stores(request.module.__name__.rsplit(".", 1)[-1])
    role_store.seed_default_roles()

    admin_id = add_user(user_store, role_store, "admin@example.com", ("Platform Admin",))
    developer_id = add_user(user_store, role_store, "dev@example.com", ("Developer",))
    user_id = add_user(user_store, role_store, "user@example.com", ("User",))

    app.router.lifespan_context = _patch_lifespan(user_store, role_store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiEnv(
            client=client,
            user_store=user_store,
            role_store=role_store,
            admin_id=admin_id,
            admin_token=create_session_token(admin_id, "admin@example.com", expire_seconds=3600),
            developer_id=developer_id,
            developer_token=create_session_token(developer_id, "dev@example.com", expire_seconds=3600),
            user_id=user_id,
            user_token=create_session_token(user_id, "user@example.com", expire_seconds=3600),
        )

    role_store.close()
    user_store.close()
