"""
tests/test_permissions.py -- PermissionResolver caching and the authorize() gate.
"""

from __future__ import annotations

import logging
from unittest.mock import MagicMock

import pytest

from auth.models import Identity, Organization, Role, Tenant, TenantScope
from auth.permissions import PermissionResolver, authorize, permission_cache_key
from cache.store import MISS, UNAVAILABLE, CacheLookup, CacheStatus, RedisCache
from core.errors import ForbiddenError


def _identity(acme, user_id=None) -> Identity:
    return Identity(user_id=user_id or acme.admin_id, email="admin@acme.com", organization_id=acme.org_id)


def _tenant(acme) -> Tenant:
    return Tenant(id=acme.org_id, name="Acme Corporation", slug="acme-corp")


def test_resolve_flattens_roles(resolver, acme):
    assert resolver.resolve(acme.admin_id, acme.org_id) == {"USER_READ", "USER_FORCE_LOGOUT"}
    assert resolver.resolve(acme.member_id, acme.org_id) == {"DASHBOARD_READ"}


def test_resolve_writes_sorted_list_to_cache(resolver, cache, acme):
    resolver.resolve(acme.admin_id, acme.org_id)
    lookup = cache.get(permission_cache_key(acme.admin_id, acme.org_id))
    assert lookup.hit
    assert lookup.value == ["USER_FORCE_LOGOUT", "USER_READ"]


def test_cache_hit_skips_database(store, cache, settings, acme):
    resolver = PermissionResolver(store, cache, settings)
    resolver.resolve(acme.admin_id, acme.org_id)

    spy = MagicMock(wraps=store.get_permission_actions)
    store.get_permission_actions = spy
    assert resolver.resolve(acme.admin_id, acme.org_id) == {"USER_READ", "USER_FORCE_LOGOUT"}
    spy.assert_not_called()


def test_stale_until_invalidated(store, resolver, acme):
    resolver.resolve(acme.member_id, acme.org_id)
    store.replace_user_roles(acme.member_id, acme.org_id, [acme.admin_role_id])
    assert resolver.resolve(acme.member_id, acme.org_id) == {"DASHBOARD_READ"}

    resolver.invalidate_user(acme.member_id)
    assert resolver.resolve(acme.member_id, acme.org_id) == {"USER_READ", "USER_FORCE_LOGOUT"}


def test_invalidate_all_drops_every_user(resolver, cache, acme):
    resolver.resolve(acme.admin_id, acme.org_id)
    resolver.resolve(acme.member_id, acme.org_id)
    cache.set("blacklist:keep", True, 60)
    resolver.invalidate_all()

    assert not cache.get(permission_cache_key(acme.admin_id, acme.org_id)).hit
    assert not cache.get(permission_cache_key(acme.member_id, acme.org_id)).hit
    assert cache.get("blacklist:keep").hit


def test_invalidate_user_keeps_other_users(resolver, cache, acme):
    resolver.resolve(acme.admin_id, acme.org_id)
    resolver.resolve(acme.member_id, acme.org_id)
    resolver.invalidate_user(acme.member_id)
    assert cache.get(permission_cache_key(acme.admin_id, acme.org_id)).hit
    assert not cache.get(permission_cache_key(acme.member_id, acme.org_id)).hit


def test_unavailable_cache_falls_back_to_database(store, settings, acme, caplog):
    broken = MagicMock()
    broken.get.return_value = UNAVAILABLE
    broken.set.return_value = False
    resolver = PermissionResolver(store, broken, settings)

    with caplog.at_level(logging.WARNING, logger="tenantguard.auth"):
        assert resolver.resolve(acme.admin_id, acme.org_id) == {"USER_READ", "USER_FORCE_LOGOUT"}
    assert "unavailable" in caplog.text


def test_miss_is_not_logged_as_warning(store, settings, acme, caplog):
    cache = MagicMock()
    cache.get.return_value = MISS
    cache.set.return_value = True
    resolver = PermissionResolver(store, cache, settings)

    with caplog.at_level(logging.WARNING, logger="tenantguard.auth"):
        resolver.resolve(acme.admin_id, acme.org_id)
    assert [r for r in caplog.records if r.name == "tenantguard.auth"] == []


def test_hit_value_is_trusted(store, settings, acme):
    cache = MagicMock()
    cache.get.return_value = CacheLookup(CacheStatus.HIT, ["ROLE_READ"])
    resolver = PermissionResolver(store, cache, settings)
    assert resolver.resolve(acme.admin_id, acme.org_id) == {"ROLE_READ"}


def test_tenant_scoped_role_does_not_leak(store, resolver, acme):
    other_org = store.create_organization(Organization(name="Globex", slug="globex"))
    role_id = store.create_role(Role(name="GLOBEX_OPS", scope=TenantScope(other_org)))
    store.replace_role_permissions(role_id, [acme.permissions["USER_DELETE"]])
    # Assigned directly at the store level to simulate a cross-tenant row.
    store.replace_user_roles(acme.member_id, other_org, [role_id])

    assert resolver.resolve(acme.member_id, acme.org_id) == frozenset()
    assert resolver.resolve(acme.member_id, other_org) == {"USER_DELETE"}


def test_inactive_permission_and_role_are_ignored(store, resolver, acme):
    store.set_permission_active(acme.permissions["USER_READ"], False)
    assert resolver.resolve(acme.admin_id, acme.org_id) == {"USER_FORCE_LOGOUT"}
    resolver.invalidate_all()
    store.update_role(acme.admin_role_id, is_active=False)
    assert resolver.resolve(acme.admin_id, acme.org_id) == frozenset()


# ---------------------------------------------------------------------------
# authorize()
# ---------------------------------------------------------------------------


def test_authorize_any_of(resolver, acme):
    granted = authorize(resolver, _identity(acme), _tenant(acme), ["USER_DELETE", "USER_READ"])
    assert "USER_READ" in granted


def test_authorize_denies_disjoint(resolver, acme):
    with pytest.raises(ForbiddenError):
        authorize(resolver, _identity(acme), _tenant(acme), ["USER_DELETE"])


def test_authorize_denies_user_without_roles(store, resolver, acme):
    store.replace_user_roles(acme.member_id, acme.org_id, [])
    with pytest.raises(ForbiddenError):
        authorize(resolver, _identity(acme, acme.member_id), _tenant(acme), ["DASHBOARD_READ"])


def test_authorize_rejects_tenant_mismatch(resolver, acme):
    foreign = Tenant(id="someone-else", name="X", slug="x")
    with pytest.raises(ForbiddenError):
        authorize(resolver, _identity(acme), foreign, ["USER_READ"])


def test_authorize_requires_non_empty_set(resolver, acme):
    with pytest.raises(ValueError):
        authorize(resolver, _identity(acme), _tenant(acme), [])


def test_corrupt_cached_value_falls_back_to_database(store, settings, acme):
    client = MagicMock()
    client.get.return_value = "{not json"
    resolver = PermissionResolver(store, RedisCache(client=client), settings)
    assert resolver.resolve(acme.admin_id, acme.org_id) == {"USER_READ", "USER_FORCE_LOGOUT"}


def test_cached_value_of_wrong_shape_is_replaced(store, resolver, cache, acme):
    key = permission_cache_key(acme.admin_id, acme.org_id)
    cache.set(key, {"USER_DELETE": True}, 60)
    assert resolver.resolve(acme.admin_id, acme.org_id) == {"USER_READ", "USER_FORCE_LOGOUT"}
    assert cache.get(key).value == ["USER_FORCE_LOGOUT", "USER_READ"]
