"""
auth/service.py -- Authentication and session lifecycle.

AuthService is the entry point the HTTP layer calls:

  login(email, password, organization_slug)      -> LoginResult
  register(email, password, first, last, slug)   -> UserSummary
  refresh(refresh_token)                         -> TokenPair
  logout(user_id, access_token=, refresh_token=) -> None
  force_logout(user_id)                          -> None
  authenticate(access_token)                     -> Identity
  resolve_tenant(identity)                       -> Tenant
  authorize(identity, tenant, required)          -> frozenset[str] (or ForbiddenError)

Refresh rotation (one state machine per stored token: active -> revoked):
  1. Signature / exp claim invalid           -> 401, storage not consulted
  2. No stored row for the exact string      -> 401 "not found"
  3. Row already revoked                     -> REPLAY: revoke the whole family,
                                                then 401 "reuse detected"
  4. Row's expires_at passed                 -> 401 "expired" (no family revoke)
  5. Owner missing or inactive               -> 401
  6. Revoke old + insert new (same family) in one transaction. If the
     conditional revoke finds the row already revoked, a concurrent request
     won the rotation and this one is handled as a replay (step 3).

The family revocation on replay is committed in its own transaction before
the error is raised, so nothing later in the request can undo it.

Cache keys owned here:
  blacklist:{sha256(access_token)}  -- explicit logout, TTL = remaining lifetime
  revoked_before:{user_id}          -- force-logout cut-off for access tokens

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import logging
import math
import time
from datetime import datetime, timezone
from typing import Iterable, NoReturn, Optional

from sqlalchemy.exc import IntegrityError

from auth.models import Identity, LoginResult, Organization, Tenant, TokenPair, User, UserSummary
from auth.permissions import PermissionResolver, authorize
from auth.store import AuthStore
from auth.tokens import TokenIssuer, hash_password, verify_credentials
from cache.store import Cache
from core.config import Settings, get_settings
from core.errors import ConflictError, ForbiddenError, NotFoundError, UnauthorizedError

logger = logging.getLogger("tenantguard.auth")

INVALID_CREDENTIALS = "Invalid credentials."
REPLAY_DETECTED = "Token reuse detected -- all sessions revoked."


def blacklist_key(access_token: str) -> str:
    return "blacklist:" + hashlib.sha256(access_token.encode("utf-8")).hexdigest()


def revoked_before_key(user_id: str) -> str:
    return f"revoked_before:{user_id}"


class AuthService:
    """Credential verification, token issuance/rotation, revocation and the request gates."""

    def __init__(
        self,
        store: AuthStore,
        cache: Cache,
        settings: Optional[Settings] = None,
        resolver: Optional[PermissionResolver] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings or get_settings()
        self.tokens = TokenIssuer(store, self.settings)
        self.permissions = resolver or PermissionResolver(store, cache, self.settings)

    # ------------------------------------------------------------------
    # Login / register
    # ------------------------------------------------------------------

    def _active_organization(self, slug: str) -> Organization:
        org = self.store.get_organization_by_slug(slug)
        if org is None or not org.is_active:
            raise NotFoundError("Organization")
        return org

    def login(self, email: str, password: str, organization_slug: str) -> LoginResult:
        """Verify credentials inside a tenant and open a new session family.

        Unknown email, inactive user and wrong password all produce the same
        UnauthorizedError message.
        """
        org = self._active_organization(organization_slug)
        user = verify_credentials(self.store, email, password, org.id)
        if user is None:
            raise UnauthorizedError(INVALID_CREDENTIALS)

        pair = self.tokens.issue(user, org.id)

        try:
            self.store.update_last_login(user.id)
        except Exception:
            logger.warning("Could not record last login for user=%s", user.id, exc_info=True)

        logger.info("User logged in (user=%s, org=%s)", user.id, org.id)
        return LoginResult(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            user=self._summary(user, with_roles=True),
        )

    def register(
        self, email: str, password: str, first_name: str, last_name: str, organization_slug: str
    ) -> UserSummary:
        """Create a user in a tenant and give it the default USER role if one exists."""
        org = self._active_organization(organization_slug)
        if self.store.get_user_by_email(email, org.id) is not None:
            raise ConflictError("User with this email already exists in this organization.")

        default_role = self.store.find_default_role(org.id)
        user = User(
            email=email,
            organization_id=org.id,
            password_hash=hash_password(password, self.settings.bcrypt_rounds),
            first_name=first_name,
            last_name=last_name,
        )
        try:
            user.id = self.store.create_user(user, default_role_id=default_role.id if default_role else None)
        except IntegrityError as exc:
            # Concurrent registration with the same email won the insert.
            raise ConflictError("User with this email already exists in this organization.") from exc

        logger.info("User registered (user=%s, org=%s)", user.id, org.id)
        return self._summary(user, with_roles=False)

    def _summary(self, user: User, with_roles: bool) -> UserSummary:
        return UserSummary(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            organization_id=user.organization_id,
            roles=self.store.list_user_roles(user.id) if with_roles else [],
        )

    # ------------------------------------------------------------------
    # Refresh rotation
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token. The presented string is unusable afterwards."""
        claims = self.tokens.decode_refresh_token(refresh_token)
        if claims is None:
            raise UnauthorizedError("Invalid refresh token.")

        stored = self.store.get_refresh_token(refresh_token)
        if stored is None:
            raise UnauthorizedError("Refresh token not found.")

        if stored.is_revoked:
            self._revoke_family_on_replay(stored.family, stored.user_id)

        if datetime.fromisoformat(stored.expires_at) <= datetime.now(timezone.utc):
            raise UnauthorizedError("Refresh token expired.")

        user = self.store.get_user(stored.user_id)
        if user is None or not user.is_active:
            raise UnauthorizedError("User account is deactivated.")

        minted = self.tokens.mint(user, claims["organizationId"], family=stored.family)
        if not self.store.rotate_refresh_token(stored.id, minted.record):
            # Lost the race against a concurrent rotation of the same token.
            self._revoke_family_on_replay(stored.family, stored.user_id)
        return minted.pair

    def _revoke_family_on_replay(self, family: str, user_id: str) -> NoReturn:
        revoked = self.store.revoke_family(family)
        logger.warning(
            "Refresh token replay detected -- revoked entire family (user=%s, family=%s, rows=%d)",
            user_id,
            family,
            revoked,
        )
        raise UnauthorizedError(REPLAY_DETECTED)

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def logout(self, user_id: str, access_token: Optional[str] = None, refresh_token: Optional[str] = None) -> None:
        """End one session: blacklist the access token, revoke the refresh token.

        Only the presented refresh token is revoked; logout is not a replay
        event, so the rest of the family is left alone.
        """
        if access_token:
            claims = self.tokens.decode_access_token(access_token)
            if claims is not None:
                remaining = math.ceil(float(claims["exp"]) - time.time())
                if remaining > 0 and not self.cache.set(blacklist_key(access_token), True, remaining):
                    logger.warning("Could not blacklist access token for user=%s", user_id)

        if refresh_token:
            self.store.revoke_refresh_token(refresh_token, user_id)

        logger.info("User logged out (user=%s)", user_id)

    def force_logout(self, user_id: str) -> None:
        """Kill every session of a user without needing any of their tokens.

        Revokes all active refresh tokens, drops the user's cached permission
        sets in every organization and records a cut-off so access tokens
        issued before now are refused by authenticate().
        """
        revoked = self.store.revoke_user_refresh_tokens(user_id)
        self.permissions.invalidate_user(user_id)
        if not self.cache.set(revoked_before_key(user_id), time.time(), self.tokens.access_ttl):
            logger.warning("Could not record access-token cut-off for user=%s", user_id)
        logger.info("All sessions force-revoked (user=%s, refresh_tokens=%d)", user_id, revoked)

    # ------------------------------------------------------------------
    # Request gates
    # ------------------------------------------------------------------

    def authenticate(self, access_token: str) -> Identity:
        """Verify an access token and return its identity claims.

        Revocation checks read the cache. If the cache is unavailable they are
        skipped and the token is accepted on its signature alone.
        """
        claims = self.tokens.decode_access_token(access_token)
        if claims is None:
            raise UnauthorizedError("Invalid or expired access token.")

        if self.cache.get(blacklist_key(access_token)).hit:
            raise UnauthorizedError("Token has been revoked.")

        cutoff = self.cache.get(revoked_before_key(claims["sub"]))
        if (
            cutoff.hit
            and isinstance(cutoff.value, (int, float))
            and float(claims.get("iat", 0)) < float(cutoff.value)
        ):
            raise UnauthorizedError("Token has been revoked.")

        return Identity(
            user_id=claims["sub"],
            email=claims.get("email", ""),
            organization_id=claims["organizationId"],
        )

    def resolve_tenant(self, identity: Identity) -> Tenant:
        """Load the tenant named by the token's signed organization claim."""
        if not identity.organization_id:
            raise ForbiddenError("No organization context.")
        org = self.store.get_organization(identity.organization_id)
        if org is None:
            raise NotFoundError("Organization")
        if not org.is_active:
            raise ForbiddenError("Organization is deactivated.")
        return Tenant(id=org.id, name=org.name, slug=org.slug)

    def authorize(
        self, identity: Identity, tenant: Tenant, required: Iterable[str], correlation_id: Optional[str] = None
    ) -> frozenset[str]:
        return authorize(self.permissions, identity, tenant, required, correlation_id)

    def is_authorized(self, identity: Identity, tenant: Tenant, required: Iterable[str]) -> bool:
        try:
            self.authorize(identity, tenant, required)
        except ForbiddenError:
            return False
        return True
