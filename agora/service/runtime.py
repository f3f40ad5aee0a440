from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

from agora.config import Settings, get_settings
from agora.logging import get_logger
from agora.service.auth import AuthService
from agora.service.email import EmailService
from agora.service.google import GoogleOAuthClient
from agora.service.passwords import PasswordService
from agora.storage.cache import EphemeralStore, MemoryCache
from agora.storage.common import AccountDirectory, AsyncDirectory, DeadlineStore
from agora.storage.memory import MemoryDirectory
from agora.storage.postgres import PostgresDirectory
from agora.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _redact_dsn(url: Optional[str]) -> Optional[str]:
    """``redis://:pw@host:6379/0`` -> ``redis://:***@host:6379/0``."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return "<unparseable url>"
    if parsed.password is None:
        return url
    host = f"{parsed.hostname or ''}:{port}" if port else (parsed.hostname or "")
    return urlunparse(parsed._replace(netloc=f"{parsed.username or ''}:***@{host}"))


class Runtime:
    """Owns the store handles and services of one application instance.

    Built by the app lifespan (or by tests) and handed to request handlers;
    nothing here is process-global.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        directory: Optional[AccountDirectory] = None,
        cache: Optional[EphemeralStore] = None,
        email: Optional[EmailService] = None,
        google: Optional[GoogleOAuthClient] = None,
        passwords: Optional[PasswordService] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.raw_directory = directory or self._build_directory()
        self.raw_cache = cache or self._build_cache()
        self.cache = DeadlineStore(
            self.raw_cache, self.settings.cache_operation_timeout_seconds
        )
        self.directory = AsyncDirectory(
            self.raw_directory, self.settings.directory_timeout_seconds
        )
        self.email = email or EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.auth = AuthService(
            self.directory,
            self.cache,
            self.settings,
            passwords=passwords,
            email=self.email,
            google=google,
        )

    def _build_directory(self) -> AccountDirectory:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                directory: AccountDirectory = MemoryDirectory()
            else:
                directory = PostgresDirectory(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return directory

    def _build_cache(self) -> EphemeralStore:
        if self.settings.use_memory_store:
            return MemoryCache()

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.cache_operation_timeout_seconds,
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_cache_fallback_dev:
            raise RuntimeError(
                "Redis is required for token denylists, OAuth state and password resets; "
                "start Redis or set TEST_MODE=true/ALLOW_CACHE_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_CACHE_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_redact_dsn(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode=fallback_mode,
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.cache.close()
        close_directory = getattr(self.raw_directory, "close", None)
        if close_directory is not None:
            close_directory()
        logger.info("runtime_closed")


__all__ = ["Runtime"]
