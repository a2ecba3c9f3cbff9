"""
auth/dependencies.py -- FastAPI Depends() helpers for the request gates.

Gate order on a protected route:
  1. get_identity   -- verifies the Bearer access token (signature, expiry,
                       blacklist, force-logout cut-off) -> Identity
  2. get_tenant     -- loads the organization named in the token's signed
                       claim -> Tenant
  3. require_permissions(...) -- PermissionResolver + any-of check

Identity and tenant come ONLY from the verified token. Nothing here reads a
tenant id from a header, query string or path parameter, so a caller cannot
claim membership in a tenant it does not belong to.

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the FastAPI dependency injection system.
"""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, Request

from auth.models import Identity, Tenant
from auth.service import AuthService
from core.errors import UnauthorizedError


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def bearer_token(request: Request) -> str | None:
    """Return the raw token from 'Authorization: Bearer <token>', or None."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        return token or None
    return None


def get_identity(request: Request) -> Identity:
    """Require a valid access token. Raises UnauthorizedError (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: Identity = Depends(get_identity)): ...
    """
    token = bearer_token(request)
    if token is None:
        raise UnauthorizedError("Missing or malformed authorization header.")
    identity = get_auth_service(request).authenticate(token)
    request.state.identity = identity
    return identity


def get_tenant(request: Request, identity: Identity = Depends(get_identity)) -> Tenant:
    """Resolve the tenant from the authenticated identity. Runs after get_identity."""
    tenant = get_auth_service(request).resolve_tenant(identity)
    request.state.tenant = tenant
    return tenant


def require_permissions(*required: str) -> Callable[..., Identity]:
    """Build a dependency that passes if the user holds ANY of the required permissions.

    Use as a FastAPI dependency:
        @router.post("/auth/force-logout/{user_id}")
        def route(identity: Identity = Depends(require_permissions("USER_FORCE_LOGOUT"))): ...
    """
    if not required:
        raise ValueError("require_permissions() needs at least one permission")

    def dependency(
        request: Request,
        identity: Identity = Depends(get_identity),
        tenant: Tenant = Depends(get_tenant),
    ) -> Identity:
        service = get_auth_service(request)
        correlation_id = getattr(request.state, "correlation_id", None)
        request.state.permissions = service.authorize(identity, tenant, required, correlation_id)
        return identity

    return dependency
