"""
tests/test_seed.py -- The seed command and the CLI entry point.
"""

from __future__ import annotations

from auth.permissions import permission_cache_key
from main import PERMISSIONS, ROLES, main, seed


def test_seed_creates_catalogue(store, service):
    seeded = seed(store, bcrypt_rounds=4)

    for action in PERMISSIONS:
        assert store.get_permission_by_action(action) is not None
    for name in ROLES:
        role = store.get_global_role_by_name(name)
        assert role is not None and role.is_system

    login = service.login("admin@acme.com", "Admin@123", "acme-corp")
    assert login.user.id == seeded["admin"]
    assert [r.name for r in login.user.roles] == ["SUPER_ADMIN"]
    assert service.permissions.resolve(seeded["admin"], seeded["organization"]) == set(PERMISSIONS)


def test_seed_is_idempotent(store):
    first = seed(store, bcrypt_rounds=4)
    second = seed(store, bcrypt_rounds=4)
    assert first == second
    assert store.get_permission_actions(first["admin"], first["organization"]) == set(PERMISSIONS)


def test_seed_role_bundles(store):
    seeded = seed(store, bcrypt_rounds=4)
    user_id = store.get_user(seeded["admin"]).id
    store.replace_user_roles(user_id, seeded["organization"], [seeded["USER"]])
    assert store.get_permission_actions(user_id, seeded["organization"]) == set(ROLES["USER"][1])


def test_reseed_drops_cached_permission_sets(store, resolver, cache):
    seeded = seed(store, bcrypt_rounds=4)
    key = permission_cache_key(seeded["admin"], seeded["organization"])
    assert resolver.resolve(seeded["admin"], seeded["organization"]) == set(PERMISSIONS)
    assert cache.get(key).hit

    store.replace_role_permissions(seeded["SUPER_ADMIN"], [])
    seed(store, bcrypt_rounds=4, permissions=resolver)
    assert not cache.get(key).hit
    assert resolver.resolve(seeded["admin"], seeded["organization"]) == set(PERMISSIONS)


def test_cli_init_db_and_seed(tmp_path, monkeypatch, capsys):
    from core.config import get_settings

    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("CACHE_DB_PATH", str(tmp_path / "cli_cache.db"))
    get_settings.cache_clear()
    try:
        assert main(["init-db"]) == 0
        assert main(["seed", "--org-slug", "cli-org", "--admin-email", "root@cli.test"]) == 0
        assert main(["force-logout", "missing-user"]) == 1
    finally:
        get_settings.cache_clear()
    out = capsys.readouterr().out
    assert "cli-org" in out
    assert "No user with id" in out


def test_cli_without_command_prints_help(capsys):
    assert main([]) == 1
    assert "usage" in capsys.readouterr().out.lower()
