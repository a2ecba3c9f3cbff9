"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST /api/v1/auth/login                   -- email/password/org login; returns token pair
  POST /api/v1/auth/register                -- create a user in an organization
  POST /api/v1/auth/refresh                 -- rotate a refresh token
  POST /api/v1/auth/logout                  -- end the current session (requires auth)
  POST /api/v1/auth/force-logout/{user_id}  -- kill all sessions of a user (USER_FORCE_LOGOUT)
  GET  /api/v1/auth/me                      -- identity, tenant and resolved permissions

Handlers only map HTTP onto AuthService. Failures are raised as AppError
subclasses and rendered by the exception handlers in api/main.py.

Security:
  POST /login and /register are rate-limited (Settings.login_rate_limit).
  Cache-Control: no-store on every response that carries tokens.
  force-logout only reaches users of the caller's own tenant.
  logout and force-logout append an audit_logs row after the response (api/audit.py).
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse

from api.audit import build_record, write_audit
from api.limiter import limiter, login_rate_limit
from api.models import (
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    TokenPairResponse,
    UserSummaryResponse,
)
from auth.dependencies import bearer_token, get_auth_service, get_identity, get_tenant, require_permissions
from auth.models import Identity, Tenant
from auth.service import AuthService
from core.errors import NotFoundError

# Auth policy:
# - POST /auth/login, /auth/register, /auth/refresh: public
# - POST /auth/logout:                     requires auth (get_identity)
# - POST /auth/force-logout/{user_id}:     requires USER_FORCE_LOGOUT
# - GET  /auth/me:                         requires auth + tenant
router = APIRouter()


def _no_store(content: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(login_rate_limit)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email, password and organization slug.

    Wrong email and wrong password return the same 401 message.
    """
    service: AuthService = get_auth_service(request)
    result = service.login(body.email, body.password, body.organization_slug)
    payload = LoginResponse.from_result(result, expires_in=service.tokens.access_ttl)
    return _no_store(payload.model_dump())


@router.post("/auth/register", response_model=UserSummaryResponse, status_code=201)
@limiter.limit(login_rate_limit)
def register(request: Request, body: RegisterRequest) -> UserSummaryResponse:
    """Create a user in the organization named by organization_slug."""
    service: AuthService = get_auth_service(request)
    summary = service.register(body.email, body.password, body.first_name, body.last_name, body.organization_slug)
    return UserSummaryResponse.from_summary(summary)


@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is spent."""
    service: AuthService = get_auth_service(request)
    pair = service.refresh(body.refresh_token)
    payload = TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=service.tokens.access_ttl,
    )
    return _no_store(payload.model_dump())


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    background_tasks: BackgroundTasks,
    body: LogoutRequest | None = None,
    identity: Identity = Depends(get_identity),
) -> MessageResponse:
    """Blacklist the presented access token and revoke the given refresh token."""
    service: AuthService = get_auth_service(request)
    service.logout(
        identity.user_id,
        access_token=bearer_token(request),
        refresh_token=body.refresh_token if body else None,
    )
    record = build_record(
        request, identity, "USER_LOGOUT", "AUTH", body=body.model_dump(exclude_none=True) if body else None
    )
    background_tasks.add_task(write_audit, service.store, record)
    return MessageResponse(message="Logged out successfully.")


@router.post("/auth/force-logout/{user_id}", response_model=MessageResponse)
def force_logout(
    request: Request,
    user_id: str,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(require_permissions("USER_FORCE_LOGOUT")),
) -> MessageResponse:
    """Revoke every session of a user in the caller's organization."""
    service: AuthService = get_auth_service(request)
    target = service.store.get_user(user_id)
    if target is None or target.organization_id != identity.organization_id:
        raise NotFoundError("User")
    service.force_logout(user_id)
    record = build_record(request, identity, "USER_FORCE_LOGOUT", "AUTH", resource_id=user_id)
    background_tasks.add_task(write_audit, service.store, record)
    return MessageResponse(message="All sessions revoked.")


@router.get("/auth/me", response_model=MeResponse)
def me(
    request: Request,
    identity: Identity = Depends(get_identity),
    tenant: Tenant = Depends(get_tenant),
) -> MeResponse:
    """Return who the caller is, which tenant they act in and what they may do."""
    service: AuthService = get_auth_service(request)
    permissions = service.permissions.resolve(identity.user_id, tenant.id)
    return MeResponse(
        user_id=identity.user_id,
        email=identity.email,
        organization_id=tenant.id,
        organization_slug=tenant.slug,
        permissions=sorted(permissions),
    )
