from __future__ import annotations

import asyncio
import secrets
from datetime import timedelta
from typing import Optional

from agora.logging import get_logger, hash_email, token_prefix
from agora.service.email import EmailService
from agora.service.errors import (
    EmailDeliveryError,
    InvalidOrExpiredResetTokenError,
    OAuthAccountNoPasswordError,
    StoreUnavailableError,
)
from agora.service.passwords import PasswordService
from agora.service.rotation import RefreshRotationEngine
from agora.service.validation import CredentialValidator
from agora.storage.cache import EphemeralStore
from agora.storage.common import AsyncDirectory

logger = get_logger(__name__)

RESET_KEY_PREFIX = "auth:password_reset:"
RESET_TOKEN_BYTES = 32
DEFAULT_RESET_TTL = timedelta(minutes=30)


class PasswordResetFlow:
    """Single-use, time-boxed password reset tokens delivered by email.

    The opaque token maps to the account email in the ephemeral store; its
    TTL is the only expiry. Requests never reveal whether the address belongs
    to an account.
    """

    def __init__(
        self,
        store: EphemeralStore,
        directory: AsyncDirectory,
        passwords: PasswordService,
        email: EmailService,
        *,
        frontend_url: str,
        validator: Optional[CredentialValidator] = None,
        rotation: Optional[RefreshRotationEngine] = None,
        ttl: timedelta = DEFAULT_RESET_TTL,
    ) -> None:
        self.store = store
        self.directory = directory
        self.passwords = passwords
        self.email = email
        self.frontend_url = frontend_url.rstrip("/")
        self.validator = validator or CredentialValidator()
        self.rotation = rotation
        self.ttl_seconds = max(1, int(ttl.total_seconds()))

    def reset_url(self, token: str) -> str:
        return f"{self.frontend_url}/forgot-password/{token}"

    async def request_reset(self, email: str) -> None:
        self.validator.validate_reset_request(email)
        token = secrets.token_urlsafe(RESET_TOKEN_BYTES)
        await self.store.set(RESET_KEY_PREFIX + token, email, self.ttl_seconds)
        sent = await asyncio.to_thread(
            self.email.send_password_reset,
            email,
            self.reset_url(token),
            expires_minutes=self.ttl_seconds // 60,
        )
        if not sent:
            # The stored token expires on its own
            raise EmailDeliveryError("failed to send password reset email")
        logger.info(
            "password_reset_requested",
            email_hash=hash_email(email),
            token_prefix=token_prefix(token),
        )

    async def complete_reset(self, token: str, new_password: str) -> None:
        self.validator.validate_password_reset(new_password)
        if not token:
            raise InvalidOrExpiredResetTokenError()
        key = RESET_KEY_PREFIX + token
        email = await self.store.get(key)
        if email is None:
            raise InvalidOrExpiredResetTokenError()

        user = await self.directory.get_user_by_email(email)
        if user is None:
            logger.info("password_reset_account_missing", email_hash=hash_email(email))
            raise InvalidOrExpiredResetTokenError()
        if not user.has_password:
            raise OAuthAccountNoPasswordError()

        password_hash = await self.passwords.hash(new_password)
        await self.directory.update_password(user.id, password_hash)
        logger.info("password_reset_completed", user_id=user.id)

        try:
            await self.store.delete(key)
        except StoreUnavailableError as exc:
            # The key self-expires; the password change already succeeded
            logger.error(
                "password_reset_token_delete_failed",
                token_prefix=token_prefix(token),
                error=str(exc),
            )

        if self.rotation is not None:
            try:
                await self.rotation.revoke_account(user.id)
            except StoreUnavailableError as exc:
                logger.error(
                    "password_reset_token_revocation_failed", user_id=user.id, error=str(exc)
                )


__all__ = ["PasswordResetFlow", "RESET_KEY_PREFIX"]
