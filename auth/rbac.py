"""
auth/rbac.py -- Role, permission and assignment mutations.

Every mutation here changes what PermissionResolver would compute, so every
one of them invalidates the permission cache after the database write has
committed:

  assign_roles, set_user_active           -> that user's entries
  create/update/delete_role,
  assign_permissions, set_permission_active -> the whole namespace

Global roles (GlobalScope) and system roles are read-only to tenant admins:
edits raise ForbiddenError. The scope check is an isinstance() branch on the
Role.scope variant, not a None check on organization_id.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from auth.models import GlobalScope, Role, TenantScope
from auth.permissions import PermissionResolver
from auth.store import AuthStore
from core.errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError

logger = logging.getLogger("tenantguard.auth")

_EDITABLE_ROLE_FIELDS = {"name", "description", "is_active"}


class RbacAdmin:
    def __init__(self, store: AuthStore, resolver: PermissionResolver) -> None:
        self.store = store
        self.resolver = resolver

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, name: str, organization_id: str, description: str = "") -> Role:
        """Create a tenant-scoped role. Names are unique across the tenant and global roles."""
        if self.store.find_role_by_name(name, organization_id) is not None:
            raise ConflictError(f'Role "{name}" already exists.')
        role = Role(name=name, description=description, scope=TenantScope(organization_id))
        role.id = self.store.create_role(role)
        self.resolver.invalidate_all()
        return role

    def _editable_role(self, role_id: str, organization_id: str, action: str) -> Role:
        role = self.store.get_role(role_id, organization_id)
        if role is None:
            raise NotFoundError("Role")
        if role.is_system:
            raise ForbiddenError(f"Cannot {action} a system role.")
        if isinstance(role.scope, GlobalScope):
            raise ForbiddenError(f"Cannot {action} a global role.")
        return role

    def update_role(self, role_id: str, organization_id: str, **fields) -> Role:
        unknown = set(fields) - _EDITABLE_ROLE_FIELDS
        if unknown:
            raise BadRequestError(f"Unknown role fields: {sorted(unknown)}")
        role = self._editable_role(role_id, organization_id, "modify")
        new_name = fields.get("name")
        if new_name and new_name != role.name:
            clash = self.store.find_role_by_name(new_name, organization_id)
            if clash is not None and clash.id != role.id:
                raise ConflictError(f'Role "{new_name}" already exists.')
        if fields:
            self.store.update_role(role_id, **fields)
            self.resolver.invalidate_all()
        return self.store.get_role(role_id, organization_id)

    def delete_role(self, role_id: str, organization_id: str) -> Role:
        """Soft delete: the role is deactivated, assignments stay for audit."""
        self._editable_role(role_id, organization_id, "delete")
        self.store.update_role(role_id, is_active=False)
        self.resolver.invalidate_all()
        logger.info("Role deleted (role=%s, org=%s)", role_id, organization_id)
        return self.store.get_role(role_id, organization_id)

    def assign_permissions(
        self,
        role_id: str,
        organization_id: str,
        permission_ids: Iterable[str],
        assigned_by: Optional[str] = None,
    ) -> list[str]:
        """Replace a role's permissions. Unknown or inactive ids are dropped."""
        self._editable_role(role_id, organization_id, "modify permissions of")
        assigned = self.store.replace_role_permissions(role_id, permission_ids, assigned_by)
        self.resolver.invalidate_all()
        return assigned

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def assign_roles(
        self,
        user_id: str,
        organization_id: str,
        role_ids: Iterable[str],
        assigned_by: Optional[str] = None,
    ) -> list[str]:
        """Replace a user's roles with those of role_ids visible to the tenant."""
        user = self.store.get_user(user_id)
        if user is None or user.organization_id != organization_id:
            raise NotFoundError("User")
        assigned = self.store.replace_user_roles(user_id, organization_id, role_ids, assigned_by)
        self.resolver.invalidate_user(user_id)
        return assigned

    def set_user_active(self, user_id: str, organization_id: str, active: bool) -> None:
        if not self.store.set_user_active(user_id, organization_id, active):
            raise NotFoundError("User")
        self.resolver.invalidate_user(user_id)

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def set_permission_active(self, permission_id: str, active: bool) -> None:
        if not self.store.set_permission_active(permission_id, active):
            raise NotFoundError("Permission")
        self.resolver.invalidate_all()
