from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from typing import Dict, Optional

from agora.logging import get_logger, hash_email
from agora.storage.errors import ConstraintViolation
from agora.storage.models import AUTH_PROVIDER_EMAIL, User


class MemoryDirectory:
    """In-memory account directory for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock so helpers can be called while a write holds the lock
        self._data_lock = threading.RLock()

    def _find(self, **criteria: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if all(getattr(user, name) == value for name, value in criteria.items()):
                    return user
        return None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._find(email=email)

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        return self._find(google_id=google_id)

    def email_exists(self, email: str) -> bool:
        return self._find(email=email) is not None

    def username_exists(self, username: str) -> bool:
        return self._find(username=username) is not None

    def create_user(
        self,
        email: str,
        username: str,
        password_hash: Optional[str] = None,
        *,
        google_id: Optional[str] = None,
        avatar_url: Optional[str] = None,
        auth_provider: str = AUTH_PROVIDER_EMAIL,
    ) -> User:
        with self._data_lock:
            if self.email_exists(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if self.username_exists(username):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if google_id and self.get_user_by_google_id(google_id):
                raise ConstraintViolation("google account already linked", {"field": "google_id"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                password_hash=password_hash,
                google_id=google_id,
                avatar_url=avatar_url,
                auth_provider=auth_provider,
            )
            self.users[user.id] = user
        self.logger.info(
            "user_created", user_id=user.id, email_hash=hash_email(email), provider=auth_provider
        )
        return user

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                raise KeyError(user_id)
            self.users[user_id] = replace(user, password_hash=password_hash)

    def link_google_account(
        self, user_id: str, google_id: str, avatar_url: Optional[str] = None
    ) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                raise KeyError(user_id)
            owner = self.get_user_by_google_id(google_id)
            if owner is not None and owner.id != user_id:
                raise ConstraintViolation("google account already linked", {"field": "google_id"})
            updated = replace(
                user, google_id=google_id, avatar_url=avatar_url or user.avatar_url
            )
            self.users[user_id] = updated
            return updated

    def delete_user(self, user_id: str) -> None:
        with self._data_lock:
            self.users.pop(user_id, None)


__all__ = ["MemoryDirectory"]
