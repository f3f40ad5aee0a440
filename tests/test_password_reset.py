"""Tests for the password reset flow.

Tests for:
- Requesting a reset stores a token and emails a link
- Completing a reset changes the password once per token
- Completing a reset revokes previously issued tokens
- Google-only accounts, unknown and expired tokens
- A failed token delete not undoing a completed reset
"""

from datetime import timedelta

import pytest

from agora.service.errors import (
    EmailDeliveryError,
    InvalidOrExpiredResetTokenError,
    InvalidRefreshTokenError,
    OAuthAccountNoPasswordError,
    StoreUnavailableError,
    ValidationErrors,
)
from agora.service.password_reset import RESET_KEY_PREFIX, PasswordResetFlow
from agora.service.rotation import RefreshRotationEngine
from agora.storage.cache import MemoryCache
from agora.storage.models import AUTH_PROVIDER_GOOGLE


class UndeletableCache(MemoryCache):
    """MemoryCache whose deletes fail as if the store were unreachable."""

    async def delete(self, key):
        raise StoreUnavailableError("cache.delete", "timed out")


@pytest.fixture
def rotation(memory_cache, directory, clock):
    return RefreshRotationEngine(
        memory_cache,
        directory,
        "reset-secret",
        access_lifetime=timedelta(minutes=15),
        refresh_lifetime=timedelta(days=1),
        clock=clock,
    )


@pytest.fixture
def flow(memory_cache, directory, passwords, stub_email, rotation):
    return PasswordResetFlow(
        memory_cache,
        directory,
        passwords,
        stub_email,
        frontend_url="https://app.example.com/",
        rotation=rotation,
    )


@pytest.fixture
def user(memory_directory, passwords):
    return memory_directory.create_user(
        "reset@example.com", "reset_user", passwords.hash_password("OldPassword1")
    )


class TestRequestReset:
    async def test_request_emails_link_and_stores_token(self, flow, user, stub_email, memory_cache):
        await flow.request_reset(user.email)

        assert len(stub_email.sent) == 1
        mail = stub_email.sent[0]
        assert mail["to"] == user.email
        assert mail["url"].startswith("https://app.example.com/forgot-password/")
        assert mail["expires_minutes"] == 30
        assert await memory_cache.get(RESET_KEY_PREFIX + stub_email.last_token) == user.email

    async def test_request_for_unknown_email_looks_the_same(self, flow, stub_email):
        await flow.request_reset("nobody@example.com")

        assert len(stub_email.sent) == 1

    async def test_invalid_email_rejected(self, flow, stub_email):
        with pytest.raises(ValidationErrors):
            await flow.request_reset("not-an-email")
        assert stub_email.sent == []

    async def test_delivery_failure_surfaces(self, flow, user, stub_email):
        stub_email.succeed = False

        with pytest.raises(EmailDeliveryError):
            await flow.request_reset(user.email)


class TestCompleteReset:
    async def test_reset_is_single_use(self, flow, user, stub_email, memory_directory, passwords):
        await flow.request_reset(user.email)
        token = stub_email.last_token

        await flow.complete_reset(token, "NewPassword1")

        updated = memory_directory.get_user(user.id)
        assert passwords.verify_password(updated.password_hash, "NewPassword1")
        assert not passwords.verify_password(updated.password_hash, "OldPassword1")
        with pytest.raises(InvalidOrExpiredResetTokenError):
            await flow.complete_reset(token, "OtherPassword2")

    async def test_reset_revokes_existing_refresh_tokens(
        self, flow, user, stub_email, rotation, clock
    ):
        pair = await rotation.issue_pair(user.id)
        await flow.request_reset(user.email)

        await flow.complete_reset(stub_email.last_token, "NewPassword1")
        clock.advance(1)

        with pytest.raises(InvalidRefreshTokenError):
            await rotation.refresh(pair.refresh_token)

    async def test_unknown_token(self, flow):
        with pytest.raises(InvalidOrExpiredResetTokenError):
            await flow.complete_reset("never-issued", "NewPassword1")

    async def test_empty_token(self, flow):
        with pytest.raises(InvalidOrExpiredResetTokenError):
            await flow.complete_reset("", "NewPassword1")

    async def test_weak_password_keeps_token_usable(self, flow, user, stub_email):
        await flow.request_reset(user.email)
        token = stub_email.last_token

        with pytest.raises(ValidationErrors):
            await flow.complete_reset(token, "weak")

        await flow.complete_reset(token, "NewPassword1")

    async def test_google_account_cannot_reset(self, flow, memory_directory, stub_email):
        memory_directory.create_user(
            "google@example.com",
            "google_user",
            None,
            google_id="g-1",
            auth_provider=AUTH_PROVIDER_GOOGLE,
        )
        await flow.request_reset("google@example.com")

        with pytest.raises(OAuthAccountNoPasswordError):
            await flow.complete_reset(stub_email.last_token, "NewPassword1")

    async def test_token_for_unregistered_email_is_invalid(self, flow, stub_email):
        await flow.request_reset("ghost@example.com")

        with pytest.raises(InvalidOrExpiredResetTokenError):
            await flow.complete_reset(stub_email.last_token, "NewPassword1")

    async def test_token_expires_after_thirty_minutes(
        self, directory, passwords, stub_email, user, clock
    ):
        flow = PasswordResetFlow(
            MemoryCache(clock=clock),
            directory,
            passwords,
            stub_email,
            frontend_url="https://app.example.com",
        )
        await flow.request_reset(user.email)
        clock.advance(timedelta(minutes=30).total_seconds() + 1)

        with pytest.raises(InvalidOrExpiredResetTokenError):
            await flow.complete_reset(stub_email.last_token, "NewPassword1")

    async def test_failed_token_delete_still_completes_reset(
        self, directory, passwords, stub_email, user, memory_directory
    ):
        flow = PasswordResetFlow(
            UndeletableCache(),
            directory,
            passwords,
            stub_email,
            frontend_url="https://app.example.com",
        )
        await flow.request_reset(user.email)

        await flow.complete_reset(stub_email.last_token, "NewPassword1")

        updated = memory_directory.get_user(user.id)
        assert passwords.verify_password(updated.password_hash, "NewPassword1")
