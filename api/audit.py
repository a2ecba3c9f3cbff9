"""
api/audit.py -- Audit trail for session-ending actions.

Routes that end sessions (logout, force-logout) schedule write_audit() as a
FastAPI background task, so the row is written after the response is sent.
A failed write is logged with the correlation id and never reaches the
caller.

Request bodies are copied into the record with credential fields replaced
by "[REDACTED]".
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError

from auth.models import AuditRecord, Identity
from auth.store import AuthStore

logger = logging.getLogger("tenantguard.audit")

REDACTED = "[REDACTED]"
_SENSITIVE_FIELDS = frozenset(
    {"password", "password_hash", "token", "access_token", "refresh_token", "secret"}
)


def redact(body: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """Return a copy of body with non-empty credential fields masked."""
    if not body:
        return None
    return {k: REDACTED if k in _SENSITIVE_FIELDS and v else v for k, v in body.items()}


def client_ip(request: Request) -> Optional[str]:
    """First X-Forwarded-For hop, falling back to the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


def build_record(
    request: Request,
    identity: Identity,
    action: str,
    resource: str,
    resource_id: Optional[str] = None,
    body: Optional[dict[str, Any]] = None,
    status_code: int = 200,
) -> AuditRecord:
    return AuditRecord(
        action=action,
        resource=resource,
        user_id=identity.user_id,
        organization_id=identity.organization_id,
        resource_id=resource_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        details={
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "body": redact(body),
        },
        correlation_id=getattr(request.state, "correlation_id", None),
    )


def write_audit(store: AuthStore, record: AuditRecord) -> None:
    try:
        store.record_audit(record)
    except SQLAlchemyError:
        logger.exception(
            "Audit log write failed (action=%s, user=%s, correlation_id=%s)",
            record.action,
            record.user_id,
            record.correlation_id,
        )
