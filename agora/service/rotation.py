"""One-time-use refresh tokens with family tracking.

Every refresh token belongs to a family (one login) and carries its
generation inside that family. The store keeps the family's current
generation; presenting any older generation is treated as theft and revokes
every token of the account. A current-generation token that is already
spent (the loser of a concurrent refresh) is only rejected, so the winner's
new pair stays usable.
"""

from __future__ import annotations

import time
import uuid
from datetime import timedelta
from typing import Callable, Optional

from agora.logging import get_logger, token_hash, token_prefix
from agora.service.errors import (
    InvalidRefreshTokenError,
    InvalidTokenError,
    TokenError,
)
from agora.service.tokens import (
    TokenClaims,
    TokenKind,
    TokenPair,
    issue_token,
    verify_token,
)
from agora.storage.cache import EphemeralStore
from agora.storage.common import AsyncDirectory

logger = get_logger(__name__)

SPENT_KEY_PREFIX = "auth:refresh:spent:"
FAMILY_KEY_PREFIX = "auth:refresh:family:"
REVOKED_BEFORE_KEY_PREFIX = "auth:account:revoked_before:"


class RefreshRotationEngine:
    def __init__(
        self,
        store: EphemeralStore,
        directory: AsyncDirectory,
        secret: str,
        *,
        access_lifetime: timedelta,
        refresh_lifetime: timedelta,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.directory = directory
        self.secret = secret
        self.access_lifetime = access_lifetime
        self.refresh_lifetime = refresh_lifetime
        self._clock = clock

    @property
    def access_ttl_seconds(self) -> int:
        return int(self.access_lifetime.total_seconds())

    @property
    def refresh_ttl_seconds(self) -> int:
        return int(self.refresh_lifetime.total_seconds())

    async def issue_pair(
        self, subject: str, *, family: Optional[str] = None, generation: int = 0
    ) -> TokenPair:
        now = self._clock()
        family = family or uuid.uuid4().hex
        access = issue_token(self.secret, TokenKind.ACCESS, self.access_lifetime, subject, now=now)
        refresh = issue_token(
            self.secret,
            TokenKind.REFRESH,
            self.refresh_lifetime,
            subject,
            now=now,
            extra_claims={"fam": family, "gen": generation},
        )
        await self.store.set(FAMILY_KEY_PREFIX + family, str(generation), self.refresh_ttl_seconds)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_in=self.access_ttl_seconds,
            refresh_expires_in=self.refresh_ttl_seconds,
        )

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange ``refresh_token`` for a new pair; each token works once.

        Every rejection surfaces as InvalidRefreshTokenError; the reason is
        only logged.
        """
        now = self._clock()
        try:
            claims = verify_token(refresh_token, self.secret, TokenKind.REFRESH, now=now)
        except TokenError as exc:
            logger.info(
                "refresh_rejected",
                reason=type(exc).__name__,
                token_hash=token_hash(refresh_token),
            )
            raise InvalidRefreshTokenError() from exc

        if await self._revoked(claims):
            logger.info("refresh_rejected", reason="account_revoked", user_id=claims.subject)
            raise InvalidRefreshTokenError()

        family = claims.family
        current_gen = await self.store.get(FAMILY_KEY_PREFIX + family) if family else None
        if current_gen is None:
            logger.info("refresh_rejected", reason="family_unknown", user_id=claims.subject)
            raise InvalidRefreshTokenError()
        if current_gen != str(claims.generation):
            logger.warning(
                "refresh_reuse_detected",
                user_id=claims.subject,
                family_prefix=token_prefix(family),
                presented_generation=claims.generation,
                current_generation=current_gen,
            )
            await self._revoke_family(claims)
            raise InvalidRefreshTokenError()

        # Single atomic insert decides the one winner among concurrent callers
        first_use = await self.store.set_if_absent(
            SPENT_KEY_PREFIX + refresh_token,
            "1",
            claims.remaining_ttl(now),
        )
        if not first_use:
            logger.warning(
                "refresh_already_spent",
                user_id=claims.subject,
                jti_prefix=claims.token_id[:8],
                generation=claims.generation,
            )
            raise InvalidRefreshTokenError()

        if await self.directory.get_user(claims.subject) is None:
            logger.info("refresh_rejected", reason="account_missing", user_id=claims.subject)
            raise InvalidRefreshTokenError()

        pair = await self.issue_pair(
            claims.subject, family=family, generation=claims.generation + 1
        )
        logger.info("refresh_rotated", user_id=claims.subject, generation=claims.generation + 1)
        return pair

    async def revoke(self, refresh_token: str) -> None:
        """Retire ``refresh_token`` and its family. Unusable tokens are ignored."""
        now = self._clock()
        try:
            claims = verify_token(refresh_token, self.secret, TokenKind.REFRESH, now=now)
        except TokenError:
            return
        await self.store.set(
            SPENT_KEY_PREFIX + refresh_token, "1", claims.remaining_ttl(now)
        )
        if claims.family:
            await self.store.delete(FAMILY_KEY_PREFIX + claims.family)
        logger.info("refresh_revoked", user_id=claims.subject)

    async def revoke_account(self, subject: str) -> None:
        """Invalidate every token of ``subject`` issued up to now."""
        lifetime = max(self.refresh_ttl_seconds, self.access_ttl_seconds)
        await self.store.set(
            REVOKED_BEFORE_KEY_PREFIX + subject, repr(round(self._clock(), 3)), lifetime
        )
        logger.warning("account_tokens_revoked", user_id=subject)

    async def check_not_revoked(self, claims: TokenClaims) -> None:
        if await self._revoked(claims):
            raise InvalidTokenError()

    async def _revoked(self, claims: TokenClaims) -> bool:
        marker = await self.store.get(REVOKED_BEFORE_KEY_PREFIX + claims.subject)
        if marker is None:
            return False
        try:
            revoked_before = float(marker)
        except ValueError:
            logger.error("revocation_marker_corrupt", user_id=claims.subject)
            return True
        return claims.issued_at <= revoked_before

    async def _revoke_family(self, claims: TokenClaims) -> None:
        if claims.family:
            await self.store.delete(FAMILY_KEY_PREFIX + claims.family)
        await self.revoke_account(claims.subject)


__all__ = [
    "RefreshRotationEngine",
    "FAMILY_KEY_PREFIX",
    "REVOKED_BEFORE_KEY_PREFIX",
    "SPENT_KEY_PREFIX",
]
