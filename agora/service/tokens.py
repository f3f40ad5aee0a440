"""Signed, typed, expiring session tokens.

Tokens are compact HS256 JWS strings (``header.claims.signature``, base64url
without padding). The codec is a pure function of its inputs and the secret.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Mapping, Optional

from agora.logging import get_logger
from agora.service.errors import (
    ConfigurationError,
    ExpiredTokenError,
    InvalidClaimsError,
    InvalidTokenError,
    InvalidTokenKindError,
)

logger = get_logger(__name__)

_ALGORITHM = "HS256"
_RESERVED_CLAIMS = frozenset({"sub", "exp", "type", "iat", "jti"})
MIN_TTL_SECONDS = 0.001


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    kind: TokenKind
    expires_at: int
    issued_at: float
    token_id: str
    family: Optional[str] = None
    generation: int = 0
    raw: Optional[Mapping[str, Any]] = None

    def remaining_seconds(self, now: Optional[float] = None) -> int:
        current = time.time() if now is None else now
        return max(0, int(self.expires_at - current))

    def remaining_ttl(self, now: Optional[float] = None) -> float:
        """Unrounded seconds until expiry, floored at one millisecond."""
        current = time.time() if now is None else now
        return max(MIN_TTL_SECONDS, self.expires_at - current)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_in: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": "bearer",
            "expires_in": self.access_expires_in,
            "refresh_expires_in": self.refresh_expires_in,
        }


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return _encode_segment(digest)


def _lifetime_seconds(lifetime: timedelta | int | float) -> int:
    if isinstance(lifetime, timedelta):
        return int(lifetime.total_seconds())
    return int(lifetime)


def issue_token(
    secret: str,
    kind: TokenKind,
    lifetime: timedelta | int,
    subject: str,
    *,
    now: Optional[float] = None,
    extra_claims: Optional[Mapping[str, Any]] = None,
) -> str:
    """Mint a token of ``kind`` for ``subject`` expiring ``lifetime`` from now."""
    if not secret:
        raise ConfigurationError("token signing secret is not configured")
    current = time.time() if now is None else now
    payload: dict[str, Any] = {
        "sub": subject,
        "exp": int(current) + _lifetime_seconds(lifetime),
        "type": TokenKind(kind).value,
        # Millisecond precision so account revocation can order tokens within a second
        "iat": round(current, 3),
        "jti": uuid.uuid4().hex,
    }
    for key, value in (extra_claims or {}).items():
        if key not in _RESERVED_CLAIMS:
            payload[key] = value
    header = {"alg": _ALGORITHM, "typ": "JWT"}
    header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_sign(secret, signing_input)}"


def _verified_payload(token: str, secret: str) -> dict[str, Any]:
    """Return the claims of a correctly signed token or raise InvalidTokenError."""
    try:
        header_b64, payload_b64, sig_b64 = token.split(".")
    except ValueError:
        raise InvalidTokenError() from None

    try:
        header = json.loads(_decode_segment(header_b64))
    except (ValueError, TypeError):
        logger.warning("jwt_header_decode_failed")
        raise InvalidTokenError() from None
    # Reject alg confusion before touching the signature
    if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
        logger.warning("jwt_invalid_algorithm")
        raise InvalidTokenError()

    expected_sig = _sign(secret, f"{header_b64}.{payload_b64}")
    if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
        raise InvalidTokenError()

    try:
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, TypeError) as exc:
        logger.warning("jwt_payload_decode_failed", error=str(exc))
        raise InvalidTokenError() from None
    if not isinstance(payload, dict):
        raise InvalidTokenError()
    return payload


def _numeric_claim(payload: Mapping[str, Any], name: str, default: Optional[float] = None) -> float:
    value = payload.get(name, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidClaimsError()
    return float(value)


def verify_token(
    token: str,
    secret: str,
    expected_kind: TokenKind,
    *,
    now: Optional[float] = None,
) -> TokenClaims:
    """Decode ``token`` and enforce signature, expiry, kind and subject.

    Expiry is reported ahead of kind and subject problems once the signature
    has been verified.
    """
    if not token:
        raise InvalidTokenError()
    if not secret:
        raise ConfigurationError("token signing secret is not configured")
    payload = _verified_payload(token, secret)

    expires_at = int(_numeric_claim(payload, "exp"))
    current = time.time() if now is None else now
    if expires_at <= current:
        raise ExpiredTokenError()

    if payload.get("type") != TokenKind(expected_kind).value:
        raise InvalidTokenKindError()

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise InvalidClaimsError()

    family = payload.get("fam")
    return TokenClaims(
        subject=subject,
        kind=TokenKind(expected_kind),
        expires_at=expires_at,
        issued_at=_numeric_claim(payload, "iat", 0),
        token_id=str(payload.get("jti") or ""),
        family=family if isinstance(family, str) and family else None,
        generation=int(_numeric_claim(payload, "gen", 0)),
        raw=payload,
    )


__all__ = [
    "MIN_TTL_SECONDS",
    "TokenClaims",
    "TokenKind",
    "TokenPair",
    "issue_token",
    "verify_token",
]
