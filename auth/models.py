"""
auth/models.py -- Domain dataclasses for identity and access-control entities.

Pattern: Data class (pure data container, zero logic beyond tiny predicates).
Dataclasses own the domain shape; auth/store.py maps rows onto them and the
services do the work.

Role scope is a tagged variant: a role is either GlobalScope (shared by every
tenant, editable by no tenant admin) or TenantScope(organization_id). Code
that must refuse to edit global roles branches on the variant with
isinstance() instead of checking organization_id for None.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union


@dataclass
class Organization:
    """A tenant: the isolation boundary for users and scoped roles."""

    name: str
    slug: str  # unique, human-readable, used at login
    id: Optional[str] = None
    is_active: bool = True
    created_at: Optional[str] = None


@dataclass
class User:
    """An identity scoped to exactly one organization.

    Unique on (email, organization_id). Never physically deleted; deactivation
    flips is_active.
    """

    email: str
    organization_id: str
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    id: Optional[str] = None
    is_active: bool = True
    last_login_at: Optional[str] = None
    created_at: Optional[str] = None


@dataclass(frozen=True)
class GlobalScope:
    """Role visible to every tenant."""


@dataclass(frozen=True)
class TenantScope:
    """Role owned by a single tenant."""

    organization_id: str


RoleScope = Union[GlobalScope, TenantScope]


@dataclass
class Role:
    """Named permission bundle.

    is_system roles are immutable and undeletable through the admin API.
    """

    name: str
    scope: RoleScope
    description: str = ""
    id: Optional[str] = None
    is_active: bool = True
    is_system: bool = False
    created_at: Optional[str] = None

    @property
    def organization_id(self) -> Optional[str]:
        return self.scope.organization_id if isinstance(self.scope, TenantScope) else None


@dataclass
class Permission:
    """Global atomic capability, e.g. USER_READ. Not tenant-scoped."""

    action: str  # unique
    resource: str  # category, e.g. USER, ROLE
    description: str = ""
    id: Optional[str] = None
    is_active: bool = True


@dataclass
class RefreshToken:
    """One outstanding session-renewal credential.

    family groups every token descending from a single login. Rows are never
    deleted: rotation, logout and replay detection only flip is_revoked.
    """

    token: str
    user_id: str
    family: str
    expires_at: str  # ISO 8601 UTC
    id: Optional[str] = None
    is_revoked: bool = False
    created_at: Optional[str] = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class Identity:
    """Verified claims of an access token. The only source of who and which tenant."""

    user_id: str
    email: str
    organization_id: str


@dataclass(frozen=True)
class Tenant:
    id: str
    name: str
    slug: str


@dataclass
class RoleAssignment:
    role_id: str
    name: str
    description: str
    is_system: bool


@dataclass
class UserSummary:
    id: str
    email: str
    first_name: str
    last_name: str
    organization_id: str
    roles: list[RoleAssignment] = field(default_factory=list)


@dataclass
class LoginResult:
    access_token: str
    refresh_token: str
    user: UserSummary


@dataclass
class AuditRecord:
    """Append-only audit entry for a security-relevant action.

    Records are never updated or deleted -- only inserted. details holds the
    request method, path, status code and the redacted request body.
    """

    action: str  # e.g. USER_LOGOUT, USER_FORCE_LOGOUT
    resource: str  # e.g. AUTH
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: dict = field(default_factory=dict)
    correlation_id: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[str] = None
