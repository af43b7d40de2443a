"""Exceptions raised by the service layer.

The API turns each one into an error envelope using the class's
``status_code`` and ``error_code``; ``detail`` becomes the envelope's
``details``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = dict(detail) if detail else {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, status={self.status_code})"


class ValidationError(ServiceError):
    """Input rejected by a business rule."""


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class TokenExpiredError(AuthenticationError):
    """Token past its ``exp`` on a route that does not accept expired tokens."""

    error_code = "token_expired"


class InvalidTokenError(AuthenticationError):
    """Token malformed, signed with another key, or no longer in ``User.tokens``."""

    error_code = "invalid_token"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """A dependency such as the image host failed."""

    status_code = 500
    error_code = "server_error"


__all__ = [
    "AuthenticationError",
    "ConflictError",
    "ForbiddenError",
    "InvalidTokenError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
    "ServiceError",
    "TokenExpiredError",
    "ValidationError",
]
