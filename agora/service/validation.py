from __future__ import annotations

import re
from typing import List, Optional

from agora.service.errors import FieldError, ValidationErrors
from agora.storage.common import AsyncDirectory

EMAIL_REGEX = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
USERNAME_REGEX = re.compile(r"^[a-zA-Z0-9_]+$")
PASSWORD_CLASSES = (re.compile(r"[A-Z]"), re.compile(r"[a-z]"), re.compile(r"[0-9]"))

USERNAME_MIN_LEN = 3
USERNAME_MAX_LEN = 50
PASSWORD_MIN_LEN = 8
PASSWORD_MAX_LEN = 30

ERR_EMAIL_REQUIRED = "email is required"
ERR_EMAIL_WHITESPACE = "email cannot have leading or trailing whitespace"
ERR_EMAIL_INVALID = "invalid email format"
ERR_EMAIL_TAKEN = "email already registered"
ERR_USERNAME_REQUIRED = "username is required"
ERR_USERNAME_WHITESPACE = "username cannot have leading or trailing whitespace"
ERR_USERNAME_TOO_SHORT = f"username must be at least {USERNAME_MIN_LEN} characters"
ERR_USERNAME_TOO_LONG = f"username must be at most {USERNAME_MAX_LEN} characters"
ERR_USERNAME_INVALID = "username can only contain letters, numbers, and underscores"
ERR_USERNAME_TAKEN = "username already taken"
ERR_PASSWORD_REQUIRED = "password is required"
ERR_PASSWORD_WHITESPACE = "password cannot have leading or trailing whitespace"
ERR_PASSWORD_TOO_SHORT = f"password must be at least {PASSWORD_MIN_LEN} characters"
ERR_PASSWORD_TOO_LONG = f"password must be at most {PASSWORD_MAX_LEN} characters"
ERR_PASSWORD_WEAK = "password must contain uppercase, lowercase, and number"


def validate_email_format(email: Optional[str]) -> Optional[str]:
    if not email:
        return ERR_EMAIL_REQUIRED
    if email != email.strip():
        return ERR_EMAIL_WHITESPACE
    if not EMAIL_REGEX.match(email):
        return ERR_EMAIL_INVALID
    return None


def validate_username_format(username: Optional[str]) -> Optional[str]:
    if not username:
        return ERR_USERNAME_REQUIRED
    if username != username.strip():
        return ERR_USERNAME_WHITESPACE
    if len(username) < USERNAME_MIN_LEN:
        return ERR_USERNAME_TOO_SHORT
    if len(username) > USERNAME_MAX_LEN:
        return ERR_USERNAME_TOO_LONG
    if not USERNAME_REGEX.match(username):
        return ERR_USERNAME_INVALID
    return None


def is_strong_password(password: str) -> bool:
    """True when the password holds an ASCII uppercase letter, lowercase letter and digit."""
    return all(pattern.search(password) for pattern in PASSWORD_CLASSES)


def validate_password_format(password: Optional[str]) -> Optional[str]:
    if not password:
        return ERR_PASSWORD_REQUIRED
    if password != password.strip():
        return ERR_PASSWORD_WHITESPACE
    if len(password) < PASSWORD_MIN_LEN:
        return ERR_PASSWORD_TOO_SHORT
    if len(password) > PASSWORD_MAX_LEN:
        return ERR_PASSWORD_TOO_LONG
    if not is_strong_password(password):
        return ERR_PASSWORD_WEAK
    return None


class CredentialValidator:
    """Collects every field problem of a request instead of stopping at the first.

    Availability lookups against the directory run only once all format checks
    passed.
    """

    def __init__(self, directory: Optional[AsyncDirectory] = None) -> None:
        self.directory = directory

    @staticmethod
    def _check(errors: List[FieldError], field: str, message: Optional[str]) -> None:
        if message:
            errors.append(FieldError(field=field, message=message))

    @staticmethod
    def _raise_if_any(errors: List[FieldError]) -> None:
        if errors:
            raise ValidationErrors(errors)

    def format_errors(
        self,
        *,
        email: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        check_email: bool = False,
        check_username: bool = False,
        check_password: bool = False,
    ) -> List[FieldError]:
        errors: List[FieldError] = []
        if check_email:
            self._check(errors, "email", validate_email_format(email))
        if check_username:
            self._check(errors, "username", validate_username_format(username))
        if check_password:
            self._check(errors, "password", validate_password_format(password))
        return errors

    async def validate_registration(self, email: str, username: str, password: str) -> None:
        errors = self.format_errors(
            email=email,
            username=username,
            password=password,
            check_email=True,
            check_username=True,
            check_password=True,
        )
        if not errors and self.directory is not None:
            if await self.directory.email_exists(email):
                errors.append(FieldError("email", ERR_EMAIL_TAKEN))
            if await self.directory.username_exists(username):
                errors.append(FieldError("username", ERR_USERNAME_TAKEN))
        self._raise_if_any(errors)

    def validate_login(self, email: str, password: str) -> None:
        errors = self.format_errors(email=email, check_email=True)
        # Login only requires presence; strength rules may have changed since signup
        if not password:
            errors.append(FieldError("password", ERR_PASSWORD_REQUIRED))
        self._raise_if_any(errors)

    def validate_reset_request(self, email: str) -> None:
        self._raise_if_any(self.format_errors(email=email, check_email=True))

    def validate_password_reset(self, password: str) -> None:
        self._raise_if_any(self.format_errors(password=password, check_password=True))


__all__ = [
    "CredentialValidator",
    "is_strong_password",
    "validate_email_format",
    "validate_password_format",
    "validate_username_format",
]
