from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - unauthorized (401)
    - forbidden (403), last_contact_retained (403)
    - not_found (404), permissions_not_found (404)
    - validation_error (400)
    - conflict (409), binding_conflict, channel_exclusive, key_exists, in_use
    - rate_limited (429)
    - server_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BusinessRuleError(ValidationError):
    """A domain rule rejected the request; ``detail["code"]`` names the rule."""

    def __init__(self, message: str, code: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(message, detail={**(detail or {}), "code": code})
        self.code = code


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class LastContactRetainedError(ForbiddenError):
    """The last contact of a required channel cannot be removed (403)."""
    error_code = "last_contact_retained"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class PermissionsNotFoundError(NotFoundError):
    """One or more permission keys do not exist (404)."""
    error_code = "permissions_not_found"

    def __init__(self, missing: list[str]) -> None:
        super().__init__(
            f"permissions not found: {', '.join(missing)}",
            detail={"missing": list(missing)},
        )
        self.missing = list(missing)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class BindingConflictError(ConflictError):
    """External username is already bound to another user."""
    error_code = "binding_conflict"


class ChannelExclusiveError(ConflictError):
    """Channel allows a single contact per user and one exists."""
    error_code = "channel_exclusive"


class KeyExistsError(ConflictError):
    """Unique key already taken."""
    error_code = "key_exists"


class InUseError(ConflictError):
    """Target is still referenced and cannot be deleted."""
    error_code = "in_use"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailableError(ServiceError):
    """An upstream collaborator is unreachable (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BusinessRuleError",
    "AuthenticationError",
    "ForbiddenError",
    "LastContactRetainedError",
    "NotFoundError",
    "PermissionsNotFoundError",
    "ConflictError",
    "BindingConflictError",
    "ChannelExclusiveError",
    "KeyExistsError",
    "InUseError",
    "RateLimitedError",
    "ServerError",
    "ServiceUnavailableError",
]
