"""
tests/test_tokens.py -- Password hashing, credential checks and the token issuer.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone

from jose import jwt

from auth.tokens import TokenIssuer, hash_password, verify_credentials, verify_password


def test_hash_password_round_trip():
    hashed = hash_password("Secret@123", 4)
    assert hashed.startswith("$2")
    assert verify_password("Secret@123", hashed)
    assert not verify_password("Secret@124", hashed)


def test_verify_password_malformed_hash_returns_false():
    assert verify_password("anything", "not-a-bcrypt-hash") is False


def test_verify_credentials_success(store, acme):
    user = verify_credentials(store, acme.admin_email, acme.admin_password, acme.org_id)
    assert user is not None
    assert user.id == acme.admin_id


def test_verify_credentials_failures_return_none(store, acme):
    assert verify_credentials(store, "ghost@acme.com", acme.admin_password, acme.org_id) is None
    assert verify_credentials(store, acme.admin_email, "Wrong@123", acme.org_id) is None
    assert verify_credentials(store, acme.admin_email, acme.admin_password, "other-org") is None


def test_verify_credentials_inactive_user(store, acme):
    store.set_user_active(acme.admin_id, acme.org_id, False)
    assert verify_credentials(store, acme.admin_email, acme.admin_password, acme.org_id) is None


def test_issue_persists_one_refresh_row(store, acme, settings):
    issuer = TokenIssuer(store, settings)
    user = store.get_user(acme.admin_id)
    pair = issuer.issue(user, acme.org_id)

    record = store.get_refresh_token(pair.refresh_token)
    assert record is not None
    assert record.user_id == acme.admin_id
    assert not record.is_revoked
    assert store.list_family(record.family) == [record]


def test_access_claims(store, acme, settings):
    issuer = TokenIssuer(store, settings)
    user = store.get_user(acme.admin_id)
    before = time.time()
    pair = issuer.issue(user, acme.org_id)

    claims = issuer.decode_access_token(pair.access_token)
    assert claims["sub"] == acme.admin_id
    assert claims["email"] == acme.admin_email
    assert claims["organizationId"] == acme.org_id
    assert claims["iat"] >= before
    assert claims["exp"] - before <= settings.access_token_expire_seconds + 1


def test_tokens_minted_back_to_back_are_distinct(store, acme, settings):
    issuer = TokenIssuer(store, settings)
    user = store.get_user(acme.admin_id)
    first = issuer.mint(user, acme.org_id, family="f1")
    second = issuer.mint(user, acme.org_id, family="f1")
    assert first.pair.access_token != second.pair.access_token
    assert first.pair.refresh_token != second.pair.refresh_token


def test_new_login_gets_new_family(store, acme, settings):
    issuer = TokenIssuer(store, settings)
    user = store.get_user(acme.admin_id)
    a = issuer.decode_refresh_token(issuer.issue(user, acme.org_id).refresh_token)
    b = issuer.decode_refresh_token(issuer.issue(user, acme.org_id).refresh_token)
    assert a["family"] != b["family"]


def test_access_and_refresh_secrets_are_not_interchangeable(store, acme, settings):
    issuer = TokenIssuer(store, settings)
    pair = issuer.issue(store.get_user(acme.admin_id), acme.org_id)
    assert issuer.decode_access_token(pair.refresh_token) is None
    assert issuer.decode_refresh_token(pair.access_token) is None


def test_decode_rejects_expired_and_tampered(store, settings):
    issuer = TokenIssuer(store, settings)
    expired = jwt.encode(
        {"sub": "u1", "organizationId": "o1", "exp": datetime.now(timezone.utc) - timedelta(seconds=5)},
        settings.access_token_secret,
        algorithm="HS256",
    )
    assert issuer.decode_access_token(expired) is None
    assert issuer.decode_access_token("not.a.jwt") is None

    forged = jwt.encode(
        {"sub": "u1", "organizationId": "o1", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
        "x" * 64,
        algorithm="HS256",
    )
    assert issuer.decode_access_token(forged) is None


def test_decode_requires_identity_claims(store, settings):
    issuer = TokenIssuer(store, settings)
    no_org = jwt.encode(
        {"sub": "u1", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
        settings.access_token_secret,
        algorithm="HS256",
    )
    assert issuer.decode_access_token(no_org) is None
