from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    LoginAttempt,
    OAuthLink,
    Role,
    Session,
    User,
    normalize_username,
)


class MemoryStore:
    """In-process backing store used for development and tests.

    Nothing is persisted across restarts. Every method takes the same
    re-entrant lock so the services can be called from worker threads.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.oauth_links: Dict[str, OAuthLink] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # users
    def create_user(
        self,
        username: str,
        password_hash: Optional[str],
        *,
        email: Optional[str] = None,
        role: Role = Role.PLAYER,
        now: Optional[datetime] = None,
    ) -> User:
        normalized = normalize_username(username)
        with self._data_lock:
            if any(existing.username == normalized for existing in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            user = User(
                id=str(uuid.uuid4()),
                username=normalized,
                password_hash=password_hash,
                email=email,
                role=Role(role),
                created_at=now or self._now(),
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        normalized = normalize_username(username)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.username == normalized), None)
            return replace(user) if user else None

    def update_password(
        self, user_id: str, password_hash: str, *, now: Optional[datetime] = None
    ) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            user.updated_at = now or self._now()
            return True

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = Role(role)
            user.updated_at = self._now()
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(sess_id, None)
            for link_id, link in list(self.oauth_links.items()):
                if link.user_id == user_id:
                    self.oauth_links.pop(link_id, None)
            return True

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"field": "id"})
            self.sessions[session.id] = replace(session)
            return session

    def get_active_session(self, token_hash: str, now: datetime) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.token_hash == token_hash and sess.is_active(now):
                    return replace(sess)
            return None

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess:
                sess.last_used_at = now

    def delete_session_by_hash(self, token_hash: str) -> bool:
        with self._data_lock:
            for sess_id, sess in list(self.sessions.items()):
                if sess.token_hash == token_hash:
                    self.sessions.pop(sess_id, None)
                    return True
            return False

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            expired = [sid for sid, sess in self.sessions.items() if not sess.is_active(now)]
            for sid in expired:
                self.sessions.pop(sid, None)
            return len(expired)

    def list_user_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            active = [
                replace(sess)
                for sess in self.sessions.values()
                if sess.user_id == user_id and sess.is_active(now)
            ]
            return sorted(active, key=lambda s: s.created_at, reverse=True)

    # login attempts
    def record_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._data_lock:
            self.login_attempts.append(attempt)

    def count_failed_attempts(self, identifier: str, since: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for a in self.login_attempts
                if a.identifier == identifier and not a.success and a.attempted_at > since
            )

    def latest_failed_attempt(self, identifier: str) -> Optional[datetime]:
        with self._data_lock:
            times = [
                a.attempted_at
                for a in self.login_attempts
                if a.identifier == identifier and not a.success
            ]
            return max(times) if times else None

    def delete_login_attempts(self, identifier: str) -> int:
        with self._data_lock:
            before = len(self.login_attempts)
            self.login_attempts = [a for a in self.login_attempts if a.identifier != identifier]
            return before - len(self.login_attempts)

    def purge_login_attempts(self, before: datetime) -> int:
        with self._data_lock:
            kept = [a for a in self.login_attempts if a.attempted_at >= before]
            removed = len(self.login_attempts) - len(kept)
            self.login_attempts = kept
            return removed

    # oauth links
    def get_oauth_link(self, provider: str, provider_user_id: str) -> Optional[OAuthLink]:
        with self._data_lock:
            for link in self.oauth_links.values():
                if link.provider == provider and link.provider_user_id == provider_user_id:
                    return replace(link)
            return None

    def create_oauth_link(self, link: OAuthLink) -> OAuthLink:
        with self._data_lock:
            if link.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": link.user_id})
            for existing in self.oauth_links.values():
                if (
                    existing.provider == link.provider
                    and existing.provider_user_id == link.provider_user_id
                ):
                    raise ConstraintViolation(
                        "provider identity already linked", {"field": "provider_user_id"}
                    )
            self.oauth_links[link.id] = replace(link)
            return link

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
    ) -> Optional[OAuthLink]:
        with self._data_lock:
            link = self.oauth_links.get(link_id)
            if not link:
                return None
            link.access_token = access_token
            # Providers omit the refresh token on repeat consent; keep the old one
            if refresh_token is not None:
                link.refresh_token = refresh_token
            link.token_expires_at = token_expires_at
            if email is not None:
                link.email = email
            if display_name is not None:
                link.display_name = display_name
            if avatar_url is not None:
                link.avatar_url = avatar_url
            link.updated_at = now or self._now()
            return replace(link)

    def list_oauth_links(self, user_id: str) -> List[OAuthLink]:
        with self._data_lock:
            links = [replace(l) for l in self.oauth_links.values() if l.user_id == user_id]
            return sorted(links, key=lambda l: l.created_at)

    def delete_oauth_link(self, user_id: str, provider: str) -> Optional[OAuthLink]:
        with self._data_lock:
            for link_id, link in list(self.oauth_links.items()):
                if link.user_id == user_id and link.provider == provider:
                    return self.oauth_links.pop(link_id)
            return None

    def verify_connection(self) -> bool:
        return True
