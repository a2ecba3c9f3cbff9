"""
auth/tokens.py -- JWT signing, password hashing, and the token issuer.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens are signed with two
       different secrets (Settings.access_token_secret / refresh_token_secret)
       so a leaked refresh secret cannot forge access tokens and vice versa.
       Decoding returns None on any failure -- callers turn that into 401.

  Access tokens: short-lived (15 minutes by default), stateless, never
       persisted. Claims: sub (user id), email, organizationId, iat, exp, jti.
       iat is a float epoch so force-logout cut-offs can be compared without
       same-second ambiguity.

  Refresh tokens: long-lived (7 days by default). Claims: sub, organizationId,
       family, exp, jti. Every refresh token is ALSO persisted as a
       RefreshToken row with its own expires_at; both expiries are checked.
       jti keeps two tokens minted in the same second distinct.

  Passwords: bcrypt directly (no passlib wrapper) with a configurable cost.
       _dummy_hash() enables timing equalization in verify_credentials() so
       response time does not reveal whether an email exists.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import TYPE_CHECKING, Optional

import bcrypt
from jose import JWTError, jwt

from auth.models import RefreshToken, TokenPair, User
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from auth.store import AuthStore

logger = logging.getLogger("tenantguard.auth")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: Optional[int] = None) -> str:
    """Return a salted bcrypt hash of the given plaintext password.

    rounds defaults to Settings.bcrypt_rounds. Passwords longer than 72 bytes
    are truncated by bcrypt; the API layer caps input at 128 characters.
    """
    cost = rounds if rounds is not None else get_settings().bcrypt_rounds
    return bcrypt.hashpw(plain.encode("utf-8")[:72], bcrypt.gensalt(rounds=cost)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    bcrypt.checkpw recomputes the full hash and compares in constant time, so
    the work done does not depend on where a mismatch occurs.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


@lru_cache
def _dummy_hash() -> str:
    """Hash used when no real one exists, computed once at the configured cost."""
    return hash_password("tenantguard_timing_dummy")


def verify_credentials(store: AuthStore, email: str, password: str, organization_id: str) -> User | None:
    """Check an (email, password) pair inside one tenant with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against the dummy hash (same cost as a real check)
    - Wrong password / inactive user: bcrypt runs against the real hash

    Returns the User on success, None on any failure. Callers must not
    distinguish the failure reasons in what they return to the client.
    """
    user = store.get_user_by_email(email, organization_id)
    if user is None:
        verify_password(password, _dummy_hash())
        return None
    if not verify_password(password, user.password_hash):
        return None
    if not user.is_active:
        return None
    return user


# ---------------------------------------------------------------------------
# Token issuer
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MintedTokens:
    """A signed pair plus the refresh-token row that must be persisted for it."""

    pair: TokenPair
    record: RefreshToken


class TokenIssuer:
    """Mints and verifies access/refresh tokens.

    issue() mints a pair and writes its RefreshToken row. mint() only signs;
    refresh rotation uses it so the new row can be written in the same
    transaction that revokes the old one.
    """

    def __init__(self, store: AuthStore, settings: Optional[Settings] = None) -> None:
        self.store = store
        self.settings = settings or get_settings()

    @property
    def access_ttl(self) -> int:
        return self.settings.access_token_expire_seconds

    def mint(self, user: User, organization_id: str, family: Optional[str] = None) -> MintedTokens:
        """Sign a new access/refresh pair. A fresh login gets a new random family."""
        token_family = family or str(uuid.uuid4())
        now = datetime.now(timezone.utc)

        access_token = jwt.encode(
            {
                "sub": user.id,
                "email": user.email,
                "organizationId": organization_id,
                "iat": time.time(),
                "exp": now + timedelta(seconds=self.settings.access_token_expire_seconds),
                "jti": uuid.uuid4().hex,
            },
            self.settings.access_token_secret,
            algorithm=_ALGORITHM,
        )

        refresh_expiry = now + timedelta(seconds=self.settings.refresh_token_expire_seconds)
        refresh_token = jwt.encode(
            {
                "sub": user.id,
                "organizationId": organization_id,
                "family": token_family,
                "exp": refresh_expiry,
                "jti": uuid.uuid4().hex,
            },
            self.settings.refresh_token_secret,
            algorithm=_ALGORITHM,
        )

        record = RefreshToken(
            token=refresh_token,
            user_id=user.id,
            family=token_family,
            expires_at=refresh_expiry.isoformat(),
        )
        return MintedTokens(pair=TokenPair(access_token=access_token, refresh_token=refresh_token), record=record)

    def issue(self, user: User, organization_id: str, family: Optional[str] = None) -> TokenPair:
        """Mint a pair and persist its refresh token. Writes exactly one row."""
        minted = self.mint(user, organization_id, family)
        self.store.create_refresh_token(minted.record)
        return minted.pair

    def decode_access_token(self, token: str) -> dict | None:
        """Verify signature and expiry of an access token. None on any failure."""
        try:
            payload = jwt.decode(token, self.settings.access_token_secret, algorithms=[_ALGORITHM])
        except JWTError:
            return None
        if not payload.get("sub") or not payload.get("organizationId"):
            return None
        return payload

    def decode_refresh_token(self, token: str) -> dict | None:
        """Verify signature and expiry of a refresh token. None on any failure."""
        try:
            payload = jwt.decode(token, self.settings.refresh_token_secret, algorithms=[_ALGORITHM])
        except JWTError:
            return None
        if not payload.get("sub") or not payload.get("family"):
            return None
        return payload
