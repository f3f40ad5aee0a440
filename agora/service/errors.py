from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Iterable, List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - unauthorized (401)
    - validation_error (400)
    - conflict (409)
    - bad_gateway (502)
    - unavailable (503)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict | list] = None,
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


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str


class ValidationErrors(ValidationError):
    """Every input-shape problem found in one request, tagged by field."""

    def __init__(self, errors: Iterable[FieldError]) -> None:
        self.errors: List[FieldError] = list(errors)
        super().__init__(
            "validation failed", detail=[asdict(err) for err in self.errors]
        )

    def fields(self) -> set[str]:
        return {err.field for err in self.errors}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """Signing secret or other mandatory configuration is unavailable."""


class StoreUnavailableError(ServerError):
    """Ephemeral store or account directory could not be reached in time."""
    status_code = 503
    error_code = "unavailable"

    def __init__(self, operation: str, reason: str = "unavailable") -> None:
        super().__init__(f"{operation} failed: {reason}", detail={"operation": operation})
        self.operation = operation


class EmailDeliveryError(ServerError):
    status_code = 502
    error_code = "bad_gateway"


# Token errors. Messages stay generic so callers cannot probe token structure.


class TokenError(AuthenticationError):
    """Base for every rejection raised by the token codec."""


class InvalidTokenError(TokenError):
    def __init__(self, message: str = "invalid token") -> None:
        super().__init__(message)


class ExpiredTokenError(TokenError):
    def __init__(self, message: str = "token expired") -> None:
        super().__init__(message)


class InvalidTokenKindError(TokenError):
    def __init__(self, message: str = "invalid token type") -> None:
        super().__init__(message)


class InvalidClaimsError(TokenError):
    def __init__(self, message: str = "invalid token claims") -> None:
        super().__init__(message)


class InvalidRefreshTokenError(AuthenticationError):
    """Single external signal for every unusable refresh token."""

    def __init__(self, message: str = "invalid refresh token") -> None:
        super().__init__(message)


# Credential errors


class InvalidCredentialsError(AuthenticationError):
    def __init__(self, message: str = "invalid email or password") -> None:
        super().__init__(message)


class OAuthAccountNoPasswordError(ValidationError):
    """Account exists but was provisioned through Google and has no password."""

    def __init__(self) -> None:
        super().__init__(
            "account uses Google sign-in, no password set",
            detail={"hint": "sign in with Google instead"},
        )


# OAuth state errors. Only logged apart; surfaced as OAuthHandshakeError.


class OAuthStateError(Exception):
    """Base for state-token rejections."""


class MalformedStateError(OAuthStateError):
    pass


class BadSignatureError(OAuthStateError):
    pass


class StateNotFoundError(OAuthStateError):
    """State was never issued, already consumed, or its TTL elapsed."""


class OAuthHandshakeError(AuthenticationError):
    def __init__(self, message: str = "oauth handshake failed") -> None:
        super().__init__(message)


# Reset errors


class InvalidOrExpiredResetTokenError(ValidationError):
    def __init__(self) -> None:
        super().__init__("invalid or expired reset token")


__all__ = [
    "ServiceError",
    "ValidationError",
    "FieldError",
    "ValidationErrors",
    "AuthenticationError",
    "ConflictError",
    "ServerError",
    "ConfigurationError",
    "StoreUnavailableError",
    "EmailDeliveryError",
    "TokenError",
    "InvalidTokenError",
    "ExpiredTokenError",
    "InvalidTokenKindError",
    "InvalidClaimsError",
    "InvalidRefreshTokenError",
    "InvalidCredentialsError",
    "OAuthAccountNoPasswordError",
    "OAuthStateError",
    "MalformedStateError",
    "BadSignatureError",
    "StateNotFoundError",
    "OAuthHandshakeError",
    "InvalidOrExpiredResetTokenError",
]
