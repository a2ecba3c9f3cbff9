"""
auth/store.py -- SQLAlchemy Core persistence layer for identity and RBAC entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. Services never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Role-name uniqueness within a scope is enforced in code (find_role_by_name)
  rather than with a UNIQUE(name, organization_id) constraint because SQLite
  treats two NULL organization ids as distinct, which would allow duplicate
  global roles.

Transactions:
  Multi-statement writes use engine.begin() so they commit or roll back as
  one unit:
    - rotate_refresh_token: revoke-old + insert-new
    - revoke_family: every row of a family flips together
    - replace_role_permissions / replace_user_roles: delete-all + insert-new
      (a concurrent reader never sees the intermediate empty set)
    - create_user: user insert + default role assignment

  audit_logs is append-only: record_audit inserts, nothing updates or deletes.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    event,
    or_,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import (
    AuditRecord,
    GlobalScope,
    Organization,
    Permission,
    RefreshToken,
    Role,
    RoleAssignment,
    TenantScope,
    User,
)

_DEFAULT_DB_URL = "sqlite:///tenantguard.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_organizations = Table(
    "organizations",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("slug", String(100), nullable=False, unique=True),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False),
    Column("organization_id", String(36), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("email", "organization_id", name="uq_users_email_org"),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(100), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("organization_id", String(36)),  # NULL = global role
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_system", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Index("ix_roles_org", "organization_id"),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("action", String(100), nullable=False, unique=True),
    Column("resource", String(50), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("role_id", String(36), nullable=False),
    Column("permission_id", String(36), nullable=False),
    Column("assigned_by", String(36)),
    Column("assigned_at", String(32), nullable=False),
    UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), nullable=False),
    Column("role_id", String(36), nullable=False),
    Column("assigned_by", String(36)),
    Column("assigned_at", String(32), nullable=False),
    UniqueConstraint("user_id", "role_id", name="uq_user_role"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("token", Text, nullable=False, unique=True),
    Column("user_id", String(36), nullable=False),
    Column("family", String(36), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("is_revoked", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Index("ix_refresh_tokens_family", "family"),
    Index("ix_refresh_tokens_user", "user_id"),
)

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36)),
    Column("organization_id", String(36)),
    Column("action", String(100), nullable=False),
    Column("resource", String(50), nullable=False),
    Column("resource_id", String(36)),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("details", Text, nullable=False, server_default="{}"),  # JSON
    Column("correlation_id", String(64)),
    Column("created_at", String(32), nullable=False),
    Index("ix_audit_logs_org", "organization_id"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


def _visible_to(organization_id: str):
    """WHERE clause for roles a tenant can see: its own plus global ones."""
    return or_(_roles.c.organization_id == organization_id, _roles.c.organization_id.is_(None))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for organizations, users, roles, permissions, refresh tokens and the audit log.

    Usage:
        store = AuthStore("sqlite:///:memory:")
        org_id = store.create_organization(Organization(name="Acme", slug="acme-corp"))
        user = store.get_user_by_email("admin@acme.com", org_id)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
        except SQLAlchemyError:
            return False
        return True

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    def create_organization(self, org: Organization) -> str:
        """Insert an organization and return its id.

        Raises sqlalchemy.exc.IntegrityError if the slug is taken.
        """
        org_id = org.id or _new_id()
        with self.engine.begin() as conn:
            conn.execute(
                _organizations.insert().values(
                    id=org_id,
                    name=org.name,
                    slug=org.slug,
                    is_active=1 if org.is_active else 0,
                    created_at=_now_iso(),
                )
            )
        return org_id

    def get_organization(self, organization_id: str) -> Organization | None:
        with self.engine.connect() as conn:
            row = conn.execute(_organizations.select().where(_organizations.c.id == organization_id)).fetchone()
        return _row_to_organization(row) if row is not None else None

    def get_organization_by_slug(self, slug: str) -> Organization | None:
        with self.engine.connect() as conn:
            row = conn.execute(_organizations.select().where(_organizations.c.slug == slug)).fetchone()
        return _row_to_organization(row) if row is not None else None

    def set_organization_active(self, organization_id: str, active: bool) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _organizations.update()
                .where(_organizations.c.id == organization_id)
                .values(is_active=1 if active else 0)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User, default_role_id: Optional[str] = None, assigned_by: Optional[str] = None) -> str:
        """Insert a user (and optionally one role assignment) in one transaction.

        Raises sqlalchemy.exc.IntegrityError if (email, organization_id) exists.
        Callers should treat that as a concurrent duplicate registration.
        """
        user_id = user.id or _new_id()
        now = _now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=user.email,
                    organization_id=user.organization_id,
                    password_hash=user.password_hash,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    is_active=1 if user.is_active else 0,
                    created_at=now,
                )
            )
            if default_role_id is not None:
                conn.execute(
                    _user_roles.insert().values(
                        user_id=user_id, role_id=default_role_id, assigned_by=assigned_by, assigned_at=now
                    )
                )
        return user_id

    def get_user(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, email: str, organization_id: str) -> User | None:
        """Point lookup on the (email, organization_id) unique key."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.email == email) & (_users.c.organization_id == organization_id))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_last_login(self, user_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login_at=_now_iso()))

    def set_user_active(self, user_id: str, organization_id: str, active: bool) -> bool:
        """Soft-(de)activate a user inside its tenant. Returns False if not found."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.organization_id == organization_id))
                .values(is_active=1 if active else 0)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> str:
        role_id = role.id or _new_id()
        with self.engine.begin() as conn:
            conn.execute(
                _roles.insert().values(
                    id=role_id,
                    name=role.name,
                    description=role.description,
                    organization_id=role.organization_id,
                    is_active=1 if role.is_active else 0,
                    is_system=1 if role.is_system else 0,
                    created_at=_now_iso(),
                )
            )
        return role_id

    def get_role(self, role_id: str, organization_id: str) -> Role | None:
        """Look up a role visible to the tenant (its own or global)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _roles.select().where((_roles.c.id == role_id) & _visible_to(organization_id))
            ).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_global_role_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _roles.select().where((_roles.c.name == name) & _roles.c.organization_id.is_(None))
            ).fetchone()
        return _row_to_role(row) if row is not None else None

    def find_role_by_name(self, name: str, organization_id: Optional[str]) -> Role | None:
        """Find a role by name in the scope a new role would collide with.

        Tenant scope collides with the tenant's roles and global roles; global
        scope (organization_id None) collides with global roles only.
        """
        where = _roles.c.name == name
        if organization_id is None:
            where = where & _roles.c.organization_id.is_(None)
        else:
            where = where & _visible_to(organization_id)
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(where)).fetchone()
        return _row_to_role(row) if row is not None else None

    def find_default_role(self, organization_id: str, name: str = "USER") -> Role | None:
        """Return the active default role, preferring a tenant-scoped one over the global one."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _roles.select().where(
                    (_roles.c.name == name) & (_roles.c.is_active == 1) & _visible_to(organization_id)
                )
            ).fetchall()
        roles = [_row_to_role(r) for r in rows]
        for role in roles:
            if isinstance(role.scope, TenantScope):
                return role
        return roles[0] if roles else None

    def update_role(self, role_id: str, **fields) -> bool:
        """Update mutable role fields: name, description, is_active."""
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        with self.engine.begin() as conn:
            result = conn.execute(_roles.update().where(_roles.c.id == role_id).values(**fields))
        return result.rowcount > 0

    def list_user_roles(self, user_id: str) -> list[RoleAssignment]:
        """Return the roles assigned to a user (any active state), by name."""
        query = (
            select(_roles.c.id, _roles.c.name, _roles.c.description, _roles.c.is_system)
            .select_from(_user_roles.join(_roles, _user_roles.c.role_id == _roles.c.id))
            .where(_user_roles.c.user_id == user_id)
            .order_by(_roles.c.name)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [
            RoleAssignment(role_id=r.id, name=r.name, description=r.description, is_system=bool(r.is_system))
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def create_permission(self, permission: Permission) -> str:
        """Insert a permission. Raises IntegrityError if the action exists."""
        permission_id = permission.id or _new_id()
        with self.engine.begin() as conn:
            conn.execute(
                _permissions.insert().values(
                    id=permission_id,
                    action=permission.action,
                    resource=permission.resource,
                    description=permission.description,
                    is_active=1 if permission.is_active else 0,
                )
            )
        return permission_id

    def get_permission_by_action(self, action: str) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(_permissions.select().where(_permissions.c.action == action)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def set_permission_active(self, permission_id: str, active: bool) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _permissions.update().where(_permissions.c.id == permission_id).values(is_active=1 if active else 0)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def replace_role_permissions(
        self, role_id: str, permission_ids: Iterable[str], assigned_by: Optional[str] = None
    ) -> list[str]:
        """Atomically replace a role's permission set.

        Unknown and inactive permission ids are dropped. Returns the ids that
        were actually assigned.
        """
        wanted = list(dict.fromkeys(permission_ids))
        now = _now_iso()
        with self.engine.begin() as conn:
            valid_ids: list[str] = []
            if wanted:
                rows = conn.execute(
                    select(_permissions.c.id).where(
                        _permissions.c.id.in_(wanted) & (_permissions.c.is_active == 1)
                    )
                ).fetchall()
                found = {r.id for r in rows}
                valid_ids = [pid for pid in wanted if pid in found]
            conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
            if valid_ids:
                conn.execute(
                    _role_permissions.insert(),
                    [
                        {"role_id": role_id, "permission_id": pid, "assigned_by": assigned_by, "assigned_at": now}
                        for pid in valid_ids
                    ],
                )
        return valid_ids

    def replace_user_roles(
        self, user_id: str, organization_id: str, role_ids: Iterable[str], assigned_by: Optional[str] = None
    ) -> list[str]:
        """Atomically replace a user's role set.

        Only roles visible to the tenant are assigned. Returns the ids that
        were actually assigned.
        """
        wanted = list(dict.fromkeys(role_ids))
        now = _now_iso()
        with self.engine.begin() as conn:
            valid_ids: list[str] = []
            if wanted:
                rows = conn.execute(
                    select(_roles.c.id).where(_roles.c.id.in_(wanted) & _visible_to(organization_id))
                ).fetchall()
                found = {r.id for r in rows}
                valid_ids = [rid for rid in wanted if rid in found]
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            if valid_ids:
                conn.execute(
                    _user_roles.insert(),
                    [
                        {"user_id": user_id, "role_id": rid, "assigned_by": assigned_by, "assigned_at": now}
                        for rid in valid_ids
                    ],
                )
        return valid_ids

    def get_permission_actions(self, user_id: str, organization_id: str) -> set[str]:
        """Flatten user -> roles -> permissions into a set of action strings.

        Only active roles visible to the tenant and active permissions count.
        This is the source of truth behind the permission cache.
        """
        query = (
            select(_permissions.c.action)
            .select_from(
                _user_roles.join(_roles, _user_roles.c.role_id == _roles.c.id)
                .join(_role_permissions, _role_permissions.c.role_id == _roles.c.id)
                .join(_permissions, _permissions.c.id == _role_permissions.c.permission_id)
            )
            .where(
                and_(
                    _user_roles.c.user_id == user_id,
                    _roles.c.is_active == 1,
                    _visible_to(organization_id),
                    _permissions.c.is_active == 1,
                )
            )
            .distinct()
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return {r.action for r in rows}

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, record: RefreshToken) -> str:
        with self.engine.begin() as conn:
            return _insert_refresh_token(conn, record)

    def get_refresh_token(self, token: str) -> RefreshToken | None:
        """Exact-match lookup on the stored token string."""
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token == token)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def rotate_refresh_token(self, current_id: str, replacement: RefreshToken) -> bool:
        """Revoke current_id and insert replacement in one transaction.

        The revoke is conditional on the row still being active. If another
        request already rotated it, nothing is written and False is returned:
        exactly one of two racing rotations wins.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == current_id) & (_refresh_tokens.c.is_revoked == 0))
                .values(is_revoked=1)
            )
            if result.rowcount != 1:
                return False
            _insert_refresh_token(conn, replacement)
        return True

    def revoke_family(self, family: str) -> int:
        """Revoke every token in a family. Returns the number of rows flipped."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.family == family) & (_refresh_tokens.c.is_revoked == 0))
                .values(is_revoked=1)
            )
        return result.rowcount

    def revoke_refresh_token(self, token: str, user_id: str) -> bool:
        """Revoke one token. user_id must match, so a caller cannot revoke someone else's session."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token == token) & (_refresh_tokens.c.user_id == user_id))
                .values(is_revoked=1)
            )
        return result.rowcount > 0

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.is_revoked == 0))
                .values(is_revoked=1)
            )
        return result.rowcount

    def list_family(self, family: str) -> list[RefreshToken]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(_refresh_tokens.c.family == family)
                .order_by(_refresh_tokens.c.created_at)
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def record_audit(self, record: AuditRecord) -> int:
        """Append one audit entry and return its id."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _audit_logs.insert().values(
                    user_id=record.user_id,
                    organization_id=record.organization_id,
                    action=record.action,
                    resource=record.resource,
                    resource_id=record.resource_id,
                    ip_address=record.ip_address,
                    user_agent=record.user_agent,
                    details=json.dumps(record.details),
                    correlation_id=record.correlation_id,
                    created_at=_now_iso(),
                )
            )
        return result.inserted_primary_key[0]

    def list_audit_logs(self, organization_id: str, action: Optional[str] = None, limit: int = 100) -> list[AuditRecord]:
        """Return a tenant's audit entries, newest first."""
        where = _audit_logs.c.organization_id == organization_id
        if action is not None:
            where = where & (_audit_logs.c.action == action)
        with self.engine.connect() as conn:
            rows = conn.execute(
                _audit_logs.select().where(where).order_by(_audit_logs.c.id.desc()).limit(limit)
            ).fetchall()
        return [_row_to_audit_record(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


def _insert_refresh_token(conn: Connection, record: RefreshToken) -> str:
    token_id = record.id or _new_id()
    conn.execute(
        _refresh_tokens.insert().values(
            id=token_id,
            token=record.token,
            user_id=record.user_id,
            family=record.family,
            expires_at=record.expires_at,
            is_revoked=1 if record.is_revoked else 0,
            created_at=_now_iso(),
        )
    )
    return token_id


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_organization(row) -> Organization:
    return Organization(
        id=row.id,
        name=row.name,
        slug=row.slug,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        organization_id=row.organization_id,
        password_hash=row.password_hash,
        first_name=row.first_name,
        last_name=row.last_name,
        is_active=bool(row.is_active),
        last_login_at=row.last_login_at,
        created_at=row.created_at,
    )


def _row_to_role(row) -> Role:
    scope = TenantScope(row.organization_id) if row.organization_id is not None else GlobalScope()
    return Role(
        id=row.id,
        name=row.name,
        description=row.description,
        scope=scope,
        is_active=bool(row.is_active),
        is_system=bool(row.is_system),
        created_at=row.created_at,
    )


def _row_to_permission(row) -> Permission:
    return Permission(
        id=row.id,
        action=row.action,
        resource=row.resource,
        description=row.description,
        is_active=bool(row.is_active),
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        token=row.token,
        user_id=row.user_id,
        family=row.family,
        expires_at=row.expires_at,
        is_revoked=bool(row.is_revoked),
        created_at=row.created_at,
    )


def _row_to_audit_record(row) -> AuditRecord:
    return AuditRecord(
        id=row.id,
        action=row.action,
        resource=row.resource,
        user_id=row.user_id,
        organization_id=row.organization_id,
        resource_id=row.resource_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        details=json.loads(row.details),
        correlation_id=row.correlation_id,
        created_at=row.created_at,
    )
