from __future__ import annotations

import re
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from agora.config import Settings
from agora.logging import get_logger, hash_email
from agora.service.email import EmailService
from agora.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    OAuthAccountNoPasswordError,
    OAuthHandshakeError,
    OAuthStateError,
)
from agora.service.google import GoogleOAuthClient
from agora.service.oauth_state import OAuthStateGuard
from agora.service.password_reset import PasswordResetFlow
from agora.service.passwords import PasswordService
from agora.service.rotation import RefreshRotationEngine
from agora.service.tokens import TokenClaims, TokenKind, TokenPair, verify_token
from agora.service.validation import USERNAME_MAX_LEN, CredentialValidator
from agora.storage.cache import EphemeralStore
from agora.storage.common import AsyncDirectory
from agora.storage.errors import ConstraintViolation
from agora.storage.models import AUTH_PROVIDER_GOOGLE, GoogleProfile, User

logger = get_logger(__name__)

_USERNAME_PREFIXES = (
    "cosmic", "cyber", "neon", "swift", "shadow", "pixel", "quantum",
    "ultra", "hyper", "nova", "astro", "turbo", "apex", "prime",
    "phantom", "stellar", "zero", "omega", "delta", "fusion",
)
_USERNAME_SUFFIXES = ("x", "io", "ix", "os", "ax", "ex", "is", "us", "on", "an")
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")
_USERNAME_ATTEMPTS = 5


def generate_username_from_email(email: str) -> str:
    """Derive a username like ``nova_jane_3f9a`` or ``janeix_3f9a`` from an address."""
    local = email.split("@", 1)[0].split("+", 1)[0]
    base = _NON_ALNUM.sub("", local).lower()[:12]
    salt = secrets.token_hex(2)
    if secrets.randbelow(2):
        username = f"{secrets.choice(_USERNAME_PREFIXES)}_{base}_{salt}"
    else:
        username = f"{base}{secrets.choice(_USERNAME_SUFFIXES)}_{salt}"
    return username[:USERNAME_MAX_LEN]


@dataclass(frozen=True)
class AuthContext:
    """Identity attached to an authenticated request."""

    user_id: str
    claims: TokenClaims


class AuthService:
    """Registration, login, Google sign-in and token lifecycle for accounts."""

    def __init__(
        self,
        directory: AsyncDirectory,
        store: EphemeralStore,
        settings: Settings,
        *,
        passwords: Optional[PasswordService] = None,
        email: Optional[EmailService] = None,
        google: Optional[GoogleOAuthClient] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not settings.jwt_secret:
            raise ValueError("jwt_secret is required")
        self.directory = directory
        self.store = store
        self.settings = settings
        self.secret = settings.jwt_secret
        self._clock = clock
        self.passwords = passwords or PasswordService()
        self.email = email or EmailService()
        self.google = google or GoogleOAuthClient(
            settings.google_client_id,
            settings.google_client_secret,
            settings.google_redirect_uri,
        )
        self.validator = CredentialValidator(directory)
        self.rotation = RefreshRotationEngine(
            store,
            directory,
            self.secret,
            access_lifetime=settings.access_token_lifetime,
            refresh_lifetime=settings.refresh_token_lifetime,
            clock=clock,
        )
        self.state_guard = OAuthStateGuard(
            store, self.secret, ttl=settings.oauth_state_lifetime
        )
        self.password_reset = PasswordResetFlow(
            store,
            directory,
            self.passwords,
            self.email,
            frontend_url=settings.frontend_url,
            validator=self.validator,
            rotation=self.rotation,
            ttl=settings.password_reset_lifetime,
        )

    async def register(self, email: str, username: str, password: str) -> User:
        await self.validator.validate_registration(email, username, password)
        password_hash = await self.passwords.hash(password)
        try:
            user = await self.directory.create_user(email, username, password_hash)
        except ConstraintViolation as exc:
            # Lost a uniqueness race after the availability checks passed
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info("user_registered", user_id=user.id, email_hash=hash_email(email))
        return user

    async def login(self, email: str, password: str) -> Tuple[User, TokenPair]:
        self.validator.validate_login(email, password)
        user = await self.directory.get_user_by_email(email)
        if user is None:
            logger.info("login_failed", reason="unknown_email", email_hash=hash_email(email))
            raise InvalidCredentialsError()
        if not user.has_password:
            raise OAuthAccountNoPasswordError()
        if not await self.passwords.verify(user.password_hash, password):
            logger.info("login_failed", reason="password_mismatch", user_id=user.id)
            raise InvalidCredentialsError()
        pair = await self.rotation.issue_pair(user.id)
        logger.info("login_succeeded", user_id=user.id)
        return user, pair

    async def refresh(self, refresh_token: str) -> TokenPair:
        return await self.rotation.refresh(refresh_token)

    async def logout(self, refresh_token: Optional[str]) -> None:
        if refresh_token:
            await self.rotation.revoke(refresh_token)

    async def google_authorization_url(self) -> str:
        # No state is recorded for a provider that cannot be used
        self.google.require_config()
        state = await self.state_guard.generate()
        return self.google.authorization_url(state)

    async def complete_google_login(self, code: str, state: str) -> Tuple[User, TokenPair]:
        try:
            await self.state_guard.validate(state)
        except OAuthStateError as exc:
            logger.warning("oauth_state_rejected", reason=type(exc).__name__)
            raise OAuthHandshakeError() from exc
        profile = await self.google.fetch_profile(code)
        user = await self._find_or_create_google_user(profile)
        pair = await self.rotation.issue_pair(user.id)
        logger.info("google_login_succeeded", user_id=user.id)
        return user, pair

    async def _find_or_create_google_user(self, profile: GoogleProfile) -> User:
        user = await self.directory.get_user_by_google_id(profile.id)
        if user is not None:
            return user

        user = await self.directory.get_user_by_email(profile.email)
        if user is not None:
            logger.info("google_account_linked", user_id=user.id)
            return await self.directory.link_google_account(user.id, profile.id, profile.picture)

        for _ in range(_USERNAME_ATTEMPTS):
            try:
                return await self.directory.create_user(
                    profile.email,
                    generate_username_from_email(profile.email),
                    None,
                    google_id=profile.id,
                    avatar_url=profile.picture,
                    auth_provider=AUTH_PROVIDER_GOOGLE,
                )
            except ConstraintViolation as exc:
                if exc.detail.get("field") != "username":
                    raise ConflictError(exc.message, detail=exc.detail) from exc
        raise ConflictError("could not allocate a username", detail={"field": "username"})

    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        claims = verify_token(access_token or "", self.secret, TokenKind.ACCESS, now=self._clock())
        await self.rotation.check_not_revoked(claims)
        return AuthContext(user_id=claims.subject, claims=claims)

    async def current_user(self, ctx: AuthContext) -> User:
        user = await self.directory.get_user(ctx.user_id)
        if user is None:
            raise InvalidTokenError()
        return user

    async def request_password_reset(self, email: str) -> None:
        await self.password_reset.request_reset(email)

    async def complete_password_reset(self, token: str, new_password: str) -> None:
        await self.password_reset.complete_reset(token, new_password)


__all__ = ["AuthContext", "AuthService", "generate_username_from_email"]
