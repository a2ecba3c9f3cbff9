"""
tests/test_auth_store.py -- AuthStore persistence rules.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import AuditRecord, GlobalScope, Organization, RefreshToken, Role, TenantScope, User


def _token(user_id: str, family: str, value: str) -> RefreshToken:
    expires = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
    return RefreshToken(token=value, user_id=user_id, family=family, expires_at=expires)


def test_email_unique_per_organization(store, acme):
    with pytest.raises(IntegrityError):
        store.create_user(User(email=acme.admin_email, organization_id=acme.org_id, password_hash="x"))

    other = store.create_organization(Organization(name="Globex", slug="globex"))
    assert store.create_user(User(email=acme.admin_email, organization_id=other, password_hash="x"))


def test_rotate_is_conditional(store, acme):
    store.create_refresh_token(_token(acme.admin_id, "fam", "t1"))
    current = store.get_refresh_token("t1")

    assert store.rotate_refresh_token(current.id, _token(acme.admin_id, "fam", "t2")) is True
    assert store.rotate_refresh_token(current.id, _token(acme.admin_id, "fam", "t3")) is False
    assert store.get_refresh_token("t3") is None
    assert [t.token for t in store.list_family("fam")] == ["t1", "t2"]


def test_revoke_family_counts_active_rows_only(store, acme):
    store.create_refresh_token(_token(acme.admin_id, "fam", "t1"))
    store.create_refresh_token(_token(acme.admin_id, "fam", "t2"))
    store.create_refresh_token(_token(acme.admin_id, "other", "t3"))
    assert store.revoke_family("fam") == 2
    assert store.revoke_family("fam") == 0
    assert not store.get_refresh_token("t3").is_revoked


def test_revoke_user_refresh_tokens(store, acme):
    store.create_refresh_token(_token(acme.admin_id, "a", "t1"))
    store.create_refresh_token(_token(acme.admin_id, "b", "t2"))
    store.create_refresh_token(_token(acme.member_id, "c", "t3"))
    assert store.revoke_user_refresh_tokens(acme.admin_id) == 2
    assert not store.get_refresh_token("t3").is_revoked


def test_role_scope_round_trip(store, acme):
    tenant_role = store.create_role(Role(name="LOCAL", scope=TenantScope(acme.org_id)))
    assert store.get_role(tenant_role, acme.org_id).scope == TenantScope(acme.org_id)
    assert isinstance(store.get_role(acme.admin_role_id, acme.org_id).scope, GlobalScope)
    assert store.get_role(tenant_role, "other-org") is None


def test_find_default_role_prefers_tenant_scope(store, acme):
    global_user = store.create_role(Role(name="USER", scope=GlobalScope()))
    assert store.find_default_role(acme.org_id).id == global_user
    local_user = store.create_role(Role(name="USER", scope=TenantScope(acme.org_id)))
    assert store.find_default_role(acme.org_id).id == local_user


def test_ping(store):
    assert store.ping() is True


def test_audit_log_is_per_tenant_newest_first(store, acme):
    store.record_audit(AuditRecord(action="USER_LOGOUT", resource="AUTH", organization_id=acme.org_id))
    store.record_audit(
        AuditRecord(
            action="USER_FORCE_LOGOUT",
            resource="AUTH",
            organization_id=acme.org_id,
            resource_id=acme.member_id,
            details={"body": None, "status_code": 200},
        )
    )
    store.record_audit(AuditRecord(action="USER_LOGOUT", resource="AUTH", organization_id="other-org"))

    entries = store.list_audit_logs(acme.org_id)
    assert [e.action for e in entries] == ["USER_FORCE_LOGOUT", "USER_LOGOUT"]
    assert entries[0].details == {"body": None, "status_code": 200}
    assert entries[0].created_at
    assert [e.action for e in store.list_audit_logs(acme.org_id, action="USER_LOGOUT")] == ["USER_LOGOUT"]
