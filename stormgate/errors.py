"""
Error Taxonomy
==============

Service-layer exceptions mapped to HTTP responses by the handlers registered
in stormgate.main. Each class carries an HTTP status_code and a stable
error_code that ends up in the JSON body:

    {"error": "<error_code>", "message": "<message>"}
"""

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for errors that are rendered as JSON responses."""

    status_code: int = 400
    error_code: str = "invalid_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.details = details or {}


class InvalidRequest(ServiceError):
    """Missing or malformed request parameter (400)."""
    status_code = 400
    error_code = "invalid_request"


class InvalidToken(InvalidRequest):
    """Approval or reset link token failed signature/expiry checks (400)."""
    error_code = "invalid_token"


class Unauthorized(ServiceError):
    """Missing, invalid or expired credentials (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenInvalid(Unauthorized):
    error_code = "token_invalid"


class TokenExpired(Unauthorized):
    error_code = "token_expired"


class Forbidden(ServiceError):
    """Authenticated but not allowed, e.g. denied account or missing role (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFound(ServiceError):
    status_code = 404
    error_code = "not_found"


class Conflict(ServiceError):
    """Duplicate email/username or an illegal status transition (409)."""
    status_code = 409
    error_code = "conflict"


class UpstreamFailure(ServiceError):
    """
    Identity provider or other upstream failure (500).

    The message is shown to clients, so it must stay generic; details belong
    in the server log.
    """
    status_code = 500
    error_code = "upstream_failure"


class ConfigurationError(Exception):
    """Fatal misconfiguration detected at startup (e.g. missing signing secret)."""
