from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from warden.storage.models import LoginAttempt, OAuthLink, Role, Session, User


class AuthStore(Protocol):
    """Persistence contract consumed by the credential, session and lockout services.

    Callers pass ``now`` wherever expiry is compared so every state machine
    reads the same clock. Uniqueness conflicts raise ``ConstraintViolation``.
    """

    # users
    def create_user(
        self,
        username: str,
        password_hash: Optional[str],
        *,
        email: Optional[str] = None,
        role: Role = Role.PLAYER,
        now: Optional[datetime] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def update_password(self, user_id: str, password_hash: str, *, now: Optional[datetime] = None) -> bool: ...

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    # sessions
    def create_session(self, session: Session) -> Session: ...

    def get_active_session(self, token_hash: str, now: datetime) -> Optional[Session]: ...

    def touch_session(self, session_id: str, now: datetime) -> None: ...

    def delete_session_by_hash(self, token_hash: str) -> bool: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...

    def list_user_sessions(self, user_id: str, now: datetime) -> List[Session]: ...

    # login attempts
    def record_login_attempt(self, attempt: LoginAttempt) -> None: ...

    def count_failed_attempts(self, identifier: str, since: datetime) -> int: ...

    def latest_failed_attempt(self, identifier: str) -> Optional[datetime]: ...

    def delete_login_attempts(self, identifier: str) -> int: ...

    def purge_login_attempts(self, before: datetime) -> int: ...

    # oauth links
    def get_oauth_link(self, provider: str, provider_user_id: str) -> Optional[OAuthLink]: ...

    def create_oauth_link(self, link: OAuthLink) -> OAuthLink: ...

    def update_oauth_link_tokens(
        self,
        link_id: str,
        *,
        access_token: Optional[str],
        refresh_token: Optional[str],
        token_expires_at: Optional[datetime],
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[OAuthLink]: ...

    def list_oauth_links(self, user_id: str) -> List[OAuthLink]: ...

    def delete_oauth_link(self, user_id: str, provider: str) -> Optional[OAuthLink]: ...

    def verify_connection(self) -> bool: ...
