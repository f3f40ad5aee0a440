"""Anti-CSRF ``state`` values for the Google authorization-code handshake.

A state is ``nonce.signature`` where both halves are base64url without padding
and ``signature = HMAC-SHA256(secret, nonce)``. The guard additionally records
each nonce in the ephemeral store with a short TTL and consumes it on
validation, so a captured state cannot be replayed.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from datetime import timedelta
from typing import Optional

from agora.logging import get_logger, token_prefix
from agora.service.errors import (
    BadSignatureError,
    ConfigurationError,
    MalformedStateError,
    StateNotFoundError,
)
from agora.storage.cache import EphemeralStore

logger = get_logger(__name__)

NONCE_BYTES = 32
STATE_KEY_PREFIX = "auth:oauth:state:"
DEFAULT_STATE_TTL = timedelta(minutes=10)


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _signature(secret: str, nonce: str) -> str:
    return _b64(hmac.new(secret.encode(), nonce.encode(), hashlib.sha256).digest())


def generate_state(secret: str) -> str:
    if not secret:
        raise ConfigurationError("state signing secret is not configured")
    nonce = _b64(secrets.token_bytes(NONCE_BYTES))
    return f"{nonce}.{_signature(secret, nonce)}"


def validate_state(state: Optional[str], secret: str) -> str:
    """Verify the signature of ``state`` and return its nonce."""
    if not secret:
        raise ConfigurationError("state signing secret is not configured")
    parts = (state or "").split(".", 1)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise MalformedStateError("malformed state")
    nonce, supplied = parts
    expected = _signature(secret, nonce)
    if not hmac.compare_digest(expected.encode(), supplied.encode()):
        raise BadSignatureError("state signature mismatch")
    return nonce


class OAuthStateGuard:
    """Single-use, time-boxed state values backed by the ephemeral store."""

    def __init__(
        self,
        store: EphemeralStore,
        secret: str,
        *,
        ttl: timedelta = DEFAULT_STATE_TTL,
    ) -> None:
        self.store = store
        self.secret = secret
        self.ttl_seconds = max(1, int(ttl.total_seconds()))

    async def generate(self) -> str:
        state = generate_state(self.secret)
        nonce = state.split(".", 1)[0]
        await self.store.set(STATE_KEY_PREFIX + nonce, "1", self.ttl_seconds)
        logger.info("oauth_state_issued", nonce_prefix=token_prefix(nonce))
        return state

    async def validate(self, state: Optional[str]) -> str:
        """Validate and consume ``state``; returns the nonce.

        The signature is checked before the store is touched, so forged values
        never reach it.
        """
        nonce = validate_state(state, self.secret)
        if await self.store.pop(STATE_KEY_PREFIX + nonce) is None:
            raise StateNotFoundError("state expired or already used")
        return nonce


__all__ = [
    "OAuthStateGuard",
    "generate_state",
    "validate_state",
]
