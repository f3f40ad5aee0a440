from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

AUTH_PROVIDER_EMAIL = "email"
AUTH_PROVIDER_GOOGLE = "google"


@dataclass
class User:
    id: str
    email: str
    username: str
    # None for accounts provisioned through Google
    password_hash: Optional[str] = None
    google_id: Optional[str] = None
    avatar_url: Optional[str] = None
    auth_provider: str = AUTH_PROVIDER_EMAIL
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def public_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "avatar_url": self.avatar_url,
            "auth_provider": self.auth_provider,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class GoogleProfile:
    """Minimal profile returned by the Google userinfo endpoint."""

    id: str
    email: str
    picture: Optional[str] = None
