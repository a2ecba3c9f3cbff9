"""
tests/conftest.py -- Shared test fixtures for tenantguard.

This module provides:
  - store / cache / settings / service / rbac: isolated in-memory unit fixtures
  - acme: the reference tenant (acme-corp, admin@acme.com holding ADMIN)
  - _patch_lifespan(): wires test objects into app.state, bypassing real startup
  - api_client: TestClient over the real app with a seeded shared-memory DB

Design: Named shared-memory SQLite URIs (not plain :memory:) are used for the
TestClient because route handlers run in a thread pool. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

DEBUG, BCRYPT_ROUNDS and LOGIN_RATE_LIMIT must be set before any tenantguard
import so get_settings() auto-generates signing secrets, hashes quickly and
does not throttle the test client.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set env before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import GlobalScope, Organization, Permission, Role, User
from auth.permissions import PermissionResolver
from auth.rbac import RbacAdmin
from auth.service import AuthService
from auth.store import AuthStore
from auth.tokens import hash_password
from cache.store import SQLiteCache
from core.config import Settings

ADMIN_EMAIL = "admin@acme.com"
ADMIN_PASSWORD = "Admin@123"
MEMBER_EMAIL = "member@acme.com"
MEMBER_PASSWORD = "Member@123"


@dataclass
class Acme:
    """Ids of the reference tenant built by seed_acme()."""

    org_id: str
    admin_id: str
    member_id: str
    admin_role_id: str
    viewer_role_id: str
    permissions: dict[str, str]
    admin_email: str = ADMIN_EMAIL
    admin_password: str = ADMIN_PASSWORD
    member_email: str = MEMBER_EMAIL
    member_password: str = MEMBER_PASSWORD


def seed_acme(store: AuthStore) -> Acme:
    """Create acme-corp with an ADMIN (USER_READ, USER_FORCE_LOGOUT) and a VIEWER (DASHBOARD_READ)."""
    permissions = {
        action: store.create_permission(Permission(action=action, resource=action.split("_")[0]))
        for action in ("USER_READ", "USER_DELETE", "USER_FORCE_LOGOUT", "DASHBOARD_READ")
    }
    admin_role_id = store.create_role(Role(name="ADMIN", scope=GlobalScope(), is_system=True))
    store.replace_role_permissions(admin_role_id, [permissions["USER_READ"], permissions["USER_FORCE_LOGOUT"]])
    viewer_role_id = store.create_role(Role(name="VIEWER", scope=GlobalScope()))
    store.replace_role_permissions(viewer_role_id, [permissions["DASHBOARD_READ"]])

    org_id = store.create_organization(Organization(name="Acme Corporation", slug="acme-corp"))
    admin_id = store.create_user(
        User(
            email=ADMIN_EMAIL,
            organization_id=org_id,
            password_hash=hash_password(ADMIN_PASSWORD, 4),
            first_name="Ada",
            last_name="Admin",
        ),
        default_role_id=admin_role_id,
    )
    member_id = store.create_user(
        User(
            email=MEMBER_EMAIL,
            organization_id=org_id,
            password_hash=hash_password(MEMBER_PASSWORD, 4),
            first_name="Max",
            last_name="Member",
        ),
        default_role_id=viewer_role_id,
    )
    return Acme(
        org_id=org_id,
        admin_id=admin_id,
        member_id=member_id,
        admin_role_id=admin_role_id,
        viewer_role_id=viewer_role_id,
        permissions=permissions,
    )


# ---------------------------------------------------------------------------
# Unit fixtures -- fresh in-memory state per test
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(debug=True, bcrypt_rounds=4, permission_cache_ttl=300)


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = AuthStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def cache() -> Generator[SQLiteCache, None, None]:
    c = SQLiteCache()
    yield c
    c.close()


@pytest.fixture
def service(store, cache, settings) -> AuthService:
    return AuthService(store, cache, settings)


@pytest.fixture
def resolver(service) -> PermissionResolver:
    return service.permissions


@pytest.fixture
def rbac(store, resolver) -> RbacAdmin:
    return RbacAdmin(store, resolver)


@pytest.fixture
def acme(store) -> Acme:
    return seed_acme(store)


@pytest.fixture
def file_store(tmp_path) -> Generator[AuthStore, None, None]:
    """File-backed store: every connection is a real, separate SQLite connection."""
    s = AuthStore(f"sqlite:///{tmp_path / 'auth.db'}")
    yield s
    s.close()


@pytest.fixture
def file_acme(file_store) -> Acme:
    return seed_acme(file_store)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AuthStore, cache: SQLiteCache):
    """Return an async context manager that replaces the real lifespan.

    No purge task is started; the in-memory cache is closed by the fixture.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.cache = cache
        app.state.auth_service = AuthService(store, cache)
        app.state.purge_task = None
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, Acme, AuthStore], None, None]:
    """Yield (client, acme, store) for API integration tests.

    Each test module gets its own named in-memory database so state does not
    leak between modules.
    """
    name = request.module.__name__.rsplit(".", 1)[-1]
    store = AuthStore(f"sqlite:///file:tg_{name}?mode=memory&cache=shared&uri=true")
    cache = SQLiteCache()
    seeded = seed_acme(store)

    app.router.lifespan_context = _patch_lifespan(store, cache)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, seeded, store

    cache.close()
    store.close()
