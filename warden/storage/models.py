from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of roles carried in tokens and read by role gates."""

    ADMIN = "admin"
    GM = "gm"
    PLAYER = "player"


def normalize_username(username: str) -> str:
    """Usernames are compared and stored lowercase."""
    return username.strip().lower()


@dataclass
class User:
    id: str
    username: str
    password_hash: Optional[str] = None
    email: Optional[str] = None
    role: Role = Role.PLAYER
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def public(self) -> "PublicUser":
        return PublicUser(
            id=self.id,
            username=self.username,
            email=self.email,
            role=self.role,
            created_at=self.created_at,
        )


@dataclass(frozen=True)
class PublicUser:
    """User view handed outside the core; never carries the password hash."""

    id: str
    username: str
    email: Optional[str]
    role: Role
    created_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role.value,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Session:
    id: str
    user_id: str
    token_hash: str
    created_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        *,
        session_id: str | None = None,
        now: datetime | None = None,
        ttl_minutes: int = 7 * 24 * 60,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        now = now or _utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            last_used_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass
class LoginAttempt:
    id: str
    identifier: str
    attempted_at: datetime
    success: bool
    ip_address: Optional[str] = None


@dataclass
class OAuthLink:
    id: str
    user_id: str
    provider: str
    provider_user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    # Provider tokens are stored encrypted; see TokenVault
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None

    def summary(self) -> dict:
        return {
            "provider": self.provider,
            "email": self.email,
            "display_name": self.display_name,
            "avatar_url": self.avatar_url,
            "linked_at": self.created_at.isoformat(),
        }
