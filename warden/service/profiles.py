from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional


@dataclass(frozen=True)
class ProviderProfile:
    """Provider user-info normalized to one shape across providers."""

    provider: str
    provider_user_id: str
    email: Optional[str] = None
    email_verified: bool = False
    display_name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    avatar_url: Optional[str] = None
    locale: Optional[str] = None


@dataclass(frozen=True)
class ProviderTokens:
    access_token: Optional[str]
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    id_token: Optional[str] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "ProviderTokens":
        expires_in = data.get("expires_in")
        try:
            expires_in = int(expires_in) if expires_in is not None else None
        except (TypeError, ValueError):
            expires_in = None
        return cls(
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
            expires_in=expires_in,
            id_token=data.get("id_token"),
            scope=data.get("scope"),
            token_type=data.get("token_type"),
        )

    def expires_at(self, now: datetime) -> Optional[datetime]:
        if not self.expires_in:
            return None
        return now + timedelta(seconds=self.expires_in)
