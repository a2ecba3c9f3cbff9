"""
core/errors.py -- Operational error hierarchy.

Every error the auth core raises on purpose is an AppError subclass. These
are expected, recoverable at the HTTP boundary and safe to show to the
caller: api/main.py turns them into the ErrorResponse envelope with the
status code and machine-readable code carried here.

Anything else that escapes a request (a storage driver failure, a bug) is a
non-operational error. The generic handler in api/main.py logs it with the
request's correlation id and returns only a generic 500.

Layer rule: core/ is the kernel. No imports from api/, auth/, or cache/.
"""

from __future__ import annotations


class AppError(Exception):
    """Base class for operational errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class BadRequestError(AppError):
    status_code = 400
    code = "bad_request"

    def __init__(self, message: str = "Bad request.") -> None:
        super().__init__(message)


class UnauthorizedError(AppError):
    """Missing, invalid, expired, revoked or replayed credential."""

    status_code = 401
    code = "unauthorized"

    def __init__(self, message: str = "Unauthorized.") -> None:
        super().__init__(message)


class ForbiddenError(AppError):
    """Authenticated, but not allowed to do this."""

    status_code = 403
    code = "forbidden"

    def __init__(self, message: str = "Forbidden: insufficient permissions.") -> None:
        super().__init__(message)


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"

    def __init__(self, resource: str = "Resource") -> None:
        super().__init__(f"{resource} not found.")
        self.resource = resource


class ConflictError(AppError):
    status_code = 409
    code = "conflict"

    def __init__(self, message: str = "Resource already exists.") -> None:
        super().__init__(message)
