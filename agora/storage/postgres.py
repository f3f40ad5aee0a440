from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from agora.logging import get_logger, hash_email
from agora.storage.errors import ConstraintViolation
from agora.storage.models import AUTH_PROVIDER_EMAIL, User

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id UUID PRIMARY KEY,
    username VARCHAR(255) NOT NULL UNIQUE,
    email VARCHAR(255) NOT NULL UNIQUE,
    password VARCHAR(255),
    google_id VARCHAR(255),
    avatar_url VARCHAR(500),
    auth_provider VARCHAR(20) NOT NULL DEFAULT 'email',
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    deleted_at TIMESTAMPTZ
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_users_google_id ON users(google_id) WHERE google_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_users_deleted_at ON users(deleted_at);
"""

# Unique index or constraint name -> offending field
_CONSTRAINT_FIELDS = {
    "users_email_key": "email",
    "users_username_key": "username",
    "idx_users_google_id": "google_id",
}

_USER_COLUMNS = "id, username, email, password, google_id, avatar_url, auth_provider, created_at"


class PostgresDirectory:
    """Postgres-backed account directory over a psycopg connection pool."""

    def __init__(
        self, dsn: str, *, min_size: int = 1, max_size: int = 10, verify_schema: bool = True
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if verify_schema:
            self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create the ``users`` table and its indexes when missing."""
        with self._connect() as conn:
            conn.execute(SCHEMA_SQL)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            row = conn.execute("SELECT to_regclass(%s) AS oid", ("public.users",)).fetchone()
        if not row or not row.get("oid"):
            raise RuntimeError(
                "Missing required Postgres table: users. Run scripts/init_db.py to install the schema."
            )

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            password_hash=row.get("password"),
            google_id=row.get("google_id"),
            avatar_url=row.get("avatar_url"),
            auth_provider=row.get("auth_provider") or AUTH_PROVIDER_EMAIL,
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    def _fetch_one(self, where: str, value: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE {where} = %s AND deleted_at IS NULL",
                (value,),
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_one("id", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_one("email", email)

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        return self._fetch_one("google_id", google_id)

    def _exists(self, column: str, value: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT 1 AS found FROM users WHERE {column} = %s LIMIT 1", (value,)
            ).fetchone()
        return row is not None

    def email_exists(self, email: str) -> bool:
        return self._exists("email", email)

    def username_exists(self, username: str) -> bool:
        return self._exists("username", username)

    @staticmethod
    def _violation(exc: errors.UniqueViolation) -> ConstraintViolation:
        diag = getattr(exc, "diag", None)
        constraint = getattr(diag, "constraint_name", None) or ""
        field = _CONSTRAINT_FIELDS.get(constraint, "email")
        return ConstraintViolation(f"{field} already exists", {"field": field})

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
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO users (id, username, email, password, google_id, avatar_url, auth_provider)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (user_id, username, email, password_hash, google_id, avatar_url, auth_provider),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._violation(exc) from exc
        self.logger.info(
            "user_created", user_id=user_id, email_hash=hash_email(email), provider=auth_provider
        )
        if row:
            return self._row_to_user(row)
        return User(
            id=user_id,
            email=email,
            username=username,
            password_hash=password_hash,
            google_id=google_id,
            avatar_url=avatar_url,
            auth_provider=auth_provider,
        )

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET password = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )

    def link_google_account(
        self, user_id: str, google_id: str, avatar_url: Optional[str] = None
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE users
                    SET google_id = %s, avatar_url = COALESCE(%s, avatar_url), updated_at = now()
                    WHERE id = %s
                    RETURNING {_USER_COLUMNS}
                    """,
                    (google_id, avatar_url, user_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._violation(exc) from exc
        if not row:
            raise KeyError(user_id)
        return self._row_to_user(row)


__all__ = ["PostgresDirectory", "SCHEMA_SQL"]
