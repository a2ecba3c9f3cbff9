"""
auth/permissions.py -- Permission resolution and the authorization gate.

PermissionResolver flattens a user's roles into the set of permission action
strings they hold inside one tenant. It is cache-first:

    permissions:{user_id}:{organization_id}  ->  sorted list of actions

On a HIT the relational store is not touched. On a MISS or when the cache is
UNAVAILABLE the set is read from AuthStore.get_permission_actions() and
written back with Settings.permission_cache_ttl. A failed write is logged and
otherwise ignored.

Invalidation is proactive and coarse (see auth/rbac.py):
  - user-level changes drop  permissions:{user_id}:
  - role-level changes drop  permissions:  (every user, every tenant)
A role can be held by many users and no reverse role -> user index is kept,
so role changes clear the whole namespace.

authorize() is deny-by-default: an empty permission set never passes, and
any ONE of the required permissions is enough.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from auth.models import Identity, Tenant
from auth.store import AuthStore
from cache.store import Cache, CacheStatus
from core.config import Settings, get_settings
from core.errors import ForbiddenError

logger = logging.getLogger("tenantguard.auth")

PERMISSION_NAMESPACE = "permissions:"


def permission_cache_key(user_id: str, organization_id: str) -> str:
    return f"{PERMISSION_NAMESPACE}{user_id}:{organization_id}"


def user_permission_prefix(user_id: str) -> str:
    return f"{PERMISSION_NAMESPACE}{user_id}:"


class PermissionResolver:
    """Cache-first resolver for (user, tenant) -> permission actions."""

    def __init__(self, store: AuthStore, cache: Cache, settings: Optional[Settings] = None) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings or get_settings()

    def resolve(self, user_id: str, organization_id: str) -> frozenset[str]:
        key = permission_cache_key(user_id, organization_id)
        lookup = self.cache.get(key)
        if lookup.hit:
            if isinstance(lookup.value, list) and all(isinstance(a, str) for a in lookup.value):
                return frozenset(lookup.value)
            logger.warning("Ignoring malformed cached permission set (user=%s)", user_id)
        elif lookup.status is CacheStatus.UNAVAILABLE:
            logger.warning("Permission cache unavailable; reading from database (user=%s)", user_id)
        else:
            logger.debug("Permission cache miss (user=%s, org=%s)", user_id, organization_id)

        actions = self.store.get_permission_actions(user_id, organization_id)
        if not self.cache.set(key, sorted(actions), self.settings.permission_cache_ttl):
            logger.warning("Could not cache permissions for user=%s", user_id)
        return frozenset(actions)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate_user(self, user_id: str) -> None:
        """Drop every cached set for a user, across all organizations."""
        if self.cache.delete_prefix(user_permission_prefix(user_id)) is None:
            logger.warning("Permission cache invalidation failed for user=%s", user_id)

    def invalidate_all(self) -> None:
        """Drop the whole permission namespace. Used after role-level changes."""
        if self.cache.delete_prefix(PERMISSION_NAMESPACE) is None:
            logger.warning("Permission cache namespace invalidation failed")


def authorize(
    resolver: PermissionResolver,
    identity: Identity,
    tenant: Tenant,
    required: Iterable[str],
    correlation_id: Optional[str] = None,
) -> frozenset[str]:
    """Raise ForbiddenError unless the user holds at least one required permission.

    identity and tenant must come from the verified access token (see
    AuthService.authenticate / resolve_tenant); a tenant whose id differs
    from the token's organization claim is refused outright.

    Returns the resolved permission set so callers can reuse it.
    """
    required_set = set(required)
    if not required_set:
        raise ValueError("authorize() needs at least one required permission")
    if tenant.id != identity.organization_id:
        logger.warning(
            "Authorization denied: tenant mismatch (user=%s, token_org=%s, tenant=%s, correlation_id=%s)",
            identity.user_id,
            identity.organization_id,
            tenant.id,
            correlation_id,
        )
        raise ForbiddenError()

    granted = resolver.resolve(identity.user_id, tenant.id)
    if granted.isdisjoint(required_set):
        logger.warning(
            "Authorization denied (user=%s, required=%s, correlation_id=%s)",
            identity.user_id,
            sorted(required_set),
            correlation_id,
        )
        raise ForbiddenError()
    return granted
