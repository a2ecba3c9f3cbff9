#!/usr/bin/env python3
"""
tenantguard -- administrative command line.

Usage:
  python main.py init-db
  python main.py seed
  python main.py seed --org-slug acme-corp --admin-email admin@acme.com
  python main.py force-logout USER_ID

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the auth database (default: sqlite:///tenantguard.db)
  REDIS_URL      Optional Redis URL. Without it the SQLite cache file is used.
  DEBUG          Set to true to run without ACCESS_TOKEN_SECRET / REFRESH_TOKEN_SECRET.
"""

import argparse
import logging
import sys
from typing import Optional

from auth.models import GlobalScope, Organization, Permission, Role, User
from auth.permissions import PermissionResolver
from auth.service import AuthService
from auth.store import AuthStore
from auth.tokens import hash_password
from cache.store import build_cache
from core.config import get_settings

logger = logging.getLogger("tenantguard.cli")

# action -> (resource, description)
PERMISSIONS: dict[str, tuple[str, str]] = {
    "USER_CREATE": ("USER", "Create new users"),
    "USER_READ": ("USER", "View user details"),
    "USER_UPDATE": ("USER", "Update user information"),
    "USER_DELETE": ("USER", "Deactivate users"),
    "USER_FORCE_LOGOUT": ("USER", "Force logout a user from all sessions"),
    "ROLE_CREATE": ("ROLE", "Create new roles"),
    "ROLE_READ": ("ROLE", "View role details"),
    "ROLE_UPDATE": ("ROLE", "Update role information"),
    "ROLE_DELETE": ("ROLE", "Delete roles"),
    "ROLE_ASSIGN": ("ROLE", "Assign roles to users"),
    "PERMISSION_CREATE": ("PERMISSION", "Create new permissions"),
    "PERMISSION_READ": ("PERMISSION", "View permissions"),
    "PERMISSION_UPDATE": ("PERMISSION", "Update permissions"),
    "PERMISSION_ASSIGN": ("PERMISSION", "Assign permissions to roles"),
    "ORG_CREATE": ("ORGANIZATION", "Create organizations"),
    "ORG_READ": ("ORGANIZATION", "View organization details"),
    "ORG_UPDATE": ("ORGANIZATION", "Update organization settings"),
    "DASHBOARD_READ": ("DASHBOARD", "View dashboard analytics"),
    "AUDIT_READ": ("AUDIT", "View audit logs"),
    "FEATURE_FLAG_READ": ("FEATURE_FLAG", "View feature flags"),
    "FEATURE_FLAG_MANAGE": ("FEATURE_FLAG", "Create/update feature flags"),
}

# Global system roles: name -> (description, permission actions)
ROLES: dict[str, tuple[str, list[str]]] = {
    "SUPER_ADMIN": ("Full system access, all permissions", list(PERMISSIONS)),
    "ADMIN": (
        "Organization administrator: manages users, roles and settings",
        [
            "USER_CREATE",
            "USER_READ",
            "USER_UPDATE",
            "USER_DELETE",
            "USER_FORCE_LOGOUT",
            "ROLE_CREATE",
            "ROLE_READ",
            "ROLE_UPDATE",
            "ROLE_DELETE",
            "ROLE_ASSIGN",
            "PERMISSION_READ",
            "PERMISSION_ASSIGN",
            "ORG_READ",
            "ORG_UPDATE",
            "DASHBOARD_READ",
            "AUDIT_READ",
            "FEATURE_FLAG_READ",
            "FEATURE_FLAG_MANAGE",
        ],
    ),
    "MANAGER": (
        "Team manager: views users and roles, limited write access",
        [
            "USER_CREATE",
            "USER_READ",
            "USER_UPDATE",
            "ROLE_READ",
            "ROLE_ASSIGN",
            "PERMISSION_READ",
            "DASHBOARD_READ",
            "AUDIT_READ",
            "FEATURE_FLAG_READ",
        ],
    ),
    "USER": ("Standard user: read-only access to own profile", ["USER_READ", "DASHBOARD_READ", "FEATURE_FLAG_READ"]),
}


def seed(
    store: AuthStore,
    org_name: str = "Acme Corporation",
    org_slug: str = "acme-corp",
    admin_email: str = "admin@acme.com",
    admin_password: str = "Admin@123",
    bcrypt_rounds: Optional[int] = None,
    permissions: Optional[PermissionResolver] = None,
) -> dict[str, str]:
    """Create the permission catalogue, system roles, an organization and its admin.

    Safe to run repeatedly: existing rows are found and reused, role
    descriptions and permission bundles are brought back in line with the
    tables above, and an existing admin user keeps its password and roles.

    When permissions is given, the permission cache namespace is dropped
    afterwards.

    Returns the ids of what was seeded: {"organization", "admin", <role name>...}.
    """
    permission_ids: dict[str, str] = {}
    for action, (resource, description) in PERMISSIONS.items():
        existing = store.get_permission_by_action(action)
        if existing is not None:
            permission_ids[action] = existing.id
        else:
            permission_ids[action] = store.create_permission(
                Permission(action=action, resource=resource, description=description)
            )

    seeded: dict[str, str] = {}
    for name, (description, actions) in ROLES.items():
        role = store.get_global_role_by_name(name)
        if role is None:
            role_id = store.create_role(Role(name=name, scope=GlobalScope(), description=description, is_system=True))
        else:
            role_id = role.id
            store.update_role(role_id, description=description)
        store.replace_role_permissions(role_id, [permission_ids[a] for a in actions])
        seeded[name] = role_id

    org = store.get_organization_by_slug(org_slug)
    org_id = org.id if org is not None else store.create_organization(Organization(name=org_name, slug=org_slug))
    seeded["organization"] = org_id

    admin = store.get_user_by_email(admin_email, org_id)
    if admin is None:
        admin_id = store.create_user(
            User(
                email=admin_email,
                organization_id=org_id,
                password_hash=hash_password(admin_password, bcrypt_rounds),
                first_name="Super",
                last_name="Admin",
            ),
            default_role_id=seeded["SUPER_ADMIN"],
        )
    else:
        admin_id = admin.id
    seeded["admin"] = admin_id

    if permissions is not None:
        permissions.invalidate_all()

    logger.info("Seeded %d permissions, %d roles, org=%s, admin=%s", len(permission_ids), len(ROLES), org_id, admin_id)
    return seeded


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tenantguard",
        description="Administrative commands for the tenantguard auth database.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py init-db
  python main.py seed --admin-password 'S3cure@pass'
  python main.py force-logout 6f1c0d1e-...
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("init-db", help="Create the database tables if they do not exist")

    seed_parser = sub.add_parser("seed", help="Create permissions, system roles, a default organization and its admin")
    seed_parser.add_argument("--org-name", default="Acme Corporation", help="Organization display name")
    seed_parser.add_argument("--org-slug", default="acme-corp", help="Organization slug used at login")
    seed_parser.add_argument("--admin-email", default="admin@acme.com", help="Admin user email")
    seed_parser.add_argument(
        "--admin-password",
        default="Admin@123",
        help="Admin user password (default: Admin@123 -- change it for anything but local development)",
    )

    logout_parser = sub.add_parser("force-logout", help="Revoke every session of a user")
    logout_parser.add_argument("user_id", help="Id of the user to log out everywhere")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    store = AuthStore(settings.database_url)
    try:
        if args.command == "init-db":
            print(f"  Database ready: {settings.database_url}")
        elif args.command == "seed":
            cache = build_cache(settings.redis_url, settings.cache_db_path)
            try:
                seeded = seed(
                    store,
                    org_name=args.org_name,
                    org_slug=args.org_slug,
                    admin_email=args.admin_email,
                    admin_password=args.admin_password,
                    bcrypt_rounds=settings.bcrypt_rounds,
                    permissions=PermissionResolver(store, cache, settings),
                )
            finally:
                cache.close()
            print(f"  Organization: {args.org_slug} ({seeded['organization']})")
            print(f"  Admin:        {args.admin_email} ({seeded['admin']})")
            print(f"  Roles:        {', '.join(ROLES)}")
        elif args.command == "force-logout":
            if store.get_user(args.user_id) is None:
                print(f"  [!] No user with id '{args.user_id}'.")
                return 1
            cache = build_cache(settings.redis_url, settings.cache_db_path)
            try:
                AuthService(store, cache, settings).force_logout(args.user_id)
            finally:
                cache.close()
            print(f"  All sessions revoked for {args.user_id}.")
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
