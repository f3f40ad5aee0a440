"""Deadline enforcement shared by every storage backend.

Ephemeral store calls are awaited under ``asyncio.wait_for``; synchronous
directory calls are pushed to a worker thread under the same kind of deadline.
Timeouts and connectivity failures surface as ``StoreUnavailableError``
carrying the operation name. Task cancellation propagates unchanged.
"""

from __future__ import annotations

import asyncio
import functools
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

from psycopg import OperationalError
from redis.exceptions import RedisError

from agora.logging import get_logger
from agora.service.errors import StoreUnavailableError
from agora.storage.cache import EphemeralStore
from agora.storage.models import User

logger = get_logger(__name__)

T = TypeVar("T")

_TRANSIENT_ERRORS = (RedisError, OperationalError, ConnectionError, OSError)


async def with_deadline(operation: str, awaitable: Awaitable[T], timeout: float) -> T:
    """Await ``awaitable`` for at most ``timeout`` seconds."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        logger.warning("storage_operation_timeout", operation=operation, timeout=timeout)
        raise StoreUnavailableError(operation, "timed out") from exc
    except _TRANSIENT_ERRORS as exc:
        logger.warning(
            "storage_operation_failed",
            operation=operation,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise StoreUnavailableError(operation) from exc


class DeadlineStore:
    """Wrap an EphemeralStore so every call honours a per-operation deadline."""

    def __init__(self, store: EphemeralStore, timeout: float) -> None:
        self.inner = store
        self.timeout = timeout

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        await with_deadline("cache.set", self.inner.set(key, value, ttl_seconds), self.timeout)

    async def get(self, key: str) -> Optional[str]:
        return await with_deadline("cache.get", self.inner.get(key), self.timeout)

    async def delete(self, key: str) -> None:
        await with_deadline("cache.delete", self.inner.delete(key), self.timeout)

    async def exists(self, key: str) -> bool:
        return await with_deadline("cache.exists", self.inner.exists(key), self.timeout)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        return await with_deadline(
            "cache.set_if_absent",
            self.inner.set_if_absent(key, value, ttl_seconds),
            self.timeout,
        )

    async def pop(self, key: str) -> Optional[str]:
        return await with_deadline("cache.pop", self.inner.pop(key), self.timeout)

    async def close(self) -> None:
        await self.inner.close()


class AccountDirectory(Protocol):
    """Synchronous account persistence consumed by the auth services."""

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_google_id(self, google_id: str) -> Optional[User]: ...

    def email_exists(self, email: str) -> bool: ...

    def username_exists(self, username: str) -> bool: ...

    def create_user(
        self,
        email: str,
        username: str,
        password_hash: Optional[str] = None,
        *,
        google_id: Optional[str] = None,
        avatar_url: Optional[str] = None,
        auth_provider: str = "email",
    ) -> User: ...

    def update_password(self, user_id: str, password_hash: str) -> None: ...

    def link_google_account(
        self, user_id: str, google_id: str, avatar_url: Optional[str] = None
    ) -> User: ...


class AsyncDirectory:
    """Run AccountDirectory calls off the event loop under a deadline."""

    def __init__(self, directory: AccountDirectory, timeout: float) -> None:
        self.inner = directory
        self.timeout = timeout

    async def _call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        call = functools.partial(func, *args, **kwargs)
        return await with_deadline(
            f"directory.{operation}", asyncio.to_thread(call), self.timeout
        )

    async def get_user(self, user_id: str) -> Optional[User]:
        return await self._call("get_user", self.inner.get_user, user_id)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        return await self._call("get_user_by_email", self.inner.get_user_by_email, email)

    async def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        return await self._call(
            "get_user_by_google_id", self.inner.get_user_by_google_id, google_id
        )

    async def email_exists(self, email: str) -> bool:
        return await self._call("email_exists", self.inner.email_exists, email)

    async def username_exists(self, username: str) -> bool:
        return await self._call("username_exists", self.inner.username_exists, username)

    async def create_user(self, email: str, username: str, password_hash: Optional[str] = None, **kwargs: Any) -> User:
        return await self._call(
            "create_user", self.inner.create_user, email, username, password_hash, **kwargs
        )

    async def update_password(self, user_id: str, password_hash: str) -> None:
        await self._call("update_password", self.inner.update_password, user_id, password_hash)

    async def link_google_account(
        self, user_id: str, google_id: str, avatar_url: Optional[str] = None
    ) -> User:
        return await self._call(
            "link_google_account",
            self.inner.link_google_account,
            user_id,
            google_id,
            avatar_url,
        )


__all__ = [
    "AccountDirectory",
    "AsyncDirectory",
    "DeadlineStore",
    "with_deadline",
]
