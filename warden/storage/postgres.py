from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation, StoreUnavailable
from warden.storage.models import (
    LoginAttempt,
    OAuthLink,
    Role,
    Session,
    User,
    normalize_username,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_users (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        password_hash TEXT,
        email TEXT,
        role TEXT NOT NULL DEFAULT 'player' CHECK (role IN ('admin', 'gm', 'player')),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_sessions (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES auth_users(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ,
        ip_address TEXT,
        user_agent TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_sessions_user_idx ON auth_sessions (user_id)",
    "CREATE INDEX IF NOT EXISTS auth_sessions_expires_idx ON auth_sessions (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS login_attempts (
        id UUID PRIMARY KEY,
        identifier TEXT NOT NULL,
        ip_address TEXT,
        attempted_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        success BOOLEAN NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_attempts_identifier_idx ON login_attempts (identifier, attempted_at)",
    """
    CREATE TABLE IF NOT EXISTS oauth_links (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES auth_users(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        provider_user_id TEXT NOT NULL,
        email TEXT,
        display_name TEXT,
        avatar_url TEXT,
        access_token TEXT,
        refresh_token TEXT,
        token_expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ,
        UNIQUE (provider, provider_user_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS oauth_links_user_idx ON oauth_links (user_id)",
)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class PostgresStore:
    """Postgres-backed store for users, sessions, login attempts and OAuth links."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable(str(exc)) from exc

    def _ensure_schema(self) -> None:
        """Create the auth tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            password_hash=row.get("password_hash"),
            email=row.get("email"),
            role=Role(row.get("role") or Role.PLAYER.value),
            created_at=_aware(row.get("created_at")) or datetime.now(timezone.utc),
            updated_at=_aware(row.get("updated_at")),
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            created_at=_aware(row["created_at"]),
            expires_at=_aware(row["expires_at"]),
            last_used_at=_aware(row.get("last_used_at")),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
        )

    @staticmethod
    def _link_from_row(row: dict) -> OAuthLink:
        return OAuthLink(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            provider=row["provider"],
            provider_user_id=row["provider_user_id"],
            email=row.get("email"),
            display_name=row.get("display_name"),
            avatar_url=row.get("avatar_url"),
            access_token=row.get("access_token"),
            refresh_token=row.get("refresh_token"),
            token_expires_at=_aware(row.get("token_expires_at")),
            created_at=_aware(row.get("created_at")) or datetime.now(timezone.utc),
            updated_at=_aware(row.get("updated_at")),
        )

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
        user = User(
            id=str(uuid.uuid4()),
            username=normalize_username(username),
            password_hash=password_hash,
            email=email,
            role=Role(role),
            created_at=now or datetime.now(timezone.utc),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_users (id, username, password_hash, email, role, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.username,
                        user.password_hash,
                        user.email,
                        user.role.value,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("username already exists", {"field": "username"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth_users WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_users WHERE username = %s",
                (normalize_username(username),),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_password(
        self, user_id: str, password_hash: str, *, now: Optional[datetime] = None
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_users SET password_hash = %s, updated_at = %s WHERE id = %s",
                (password_hash, now or datetime.now(timezone.utc), user_id),
            )
            return result.rowcount > 0

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_users SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (Role(role).value, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        # sessions and oauth_links cascade
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_users WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_sessions (id, user_id, token_hash, created_at, expires_at, last_used_at, ip_address, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token_hash,
                        session.created_at,
                        session.expires_at,
                        session.last_used_at,
                        session.ip_address,
                        session.user_agent,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"field": "token_hash"})
        return session

    def get_active_session(self, token_hash: str, now: datetime) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_sessions WHERE token_hash = %s AND expires_at > %s",
                (token_hash, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_sessions SET last_used_at = %s WHERE id = %s",
                (now, session_id),
            )

    def delete_session_by_hash(self, token_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_sessions WHERE token_hash = %s", (token_hash,)
            )
            return result.rowcount > 0

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_sessions WHERE user_id = %s", (user_id,))
            return result.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_sessions WHERE expires_at <= %s", (now,))
            return result.rowcount

    def list_user_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_sessions
                WHERE user_id = %s AND expires_at > %s
                ORDER BY created_at DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    # login attempts
    def record_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_attempts (id, identifier, ip_address, attempted_at, success)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.identifier,
                    attempt.ip_address,
                    attempt.attempted_at,
                    attempt.success,
                ),
            )

    def count_failed_attempts(self, identifier: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS failed FROM login_attempts
                WHERE identifier = %s AND success = FALSE AND attempted_at > %s
                """,
                (identifier, since),
            ).fetchone()
        return int(row["failed"]) if row else 0

    def latest_failed_attempt(self, identifier: str) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT MAX(attempted_at) AS last_failed FROM login_attempts
                WHERE identifier = %s AND success = FALSE
                """,
                (identifier,),
            ).fetchone()
        return _aware(row["last_failed"]) if row else None

    def delete_login_attempts(self, identifier: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM login_attempts WHERE identifier = %s", (identifier,)
            )
            return result.rowcount

    def purge_login_attempts(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM login_attempts WHERE attempted_at < %s", (before,)
            )
            return result.rowcount

    # oauth links
    def get_oauth_link(self, provider: str, provider_user_id: str) -> Optional[OAuthLink]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_links WHERE provider = %s AND provider_user_id = %s",
                (provider, provider_user_id),
            ).fetchone()
        return self._link_from_row(row) if row else None

    def create_oauth_link(self, link: OAuthLink) -> OAuthLink:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO oauth_links (
                        id, user_id, provider, provider_user_id, email, display_name,
                        avatar_url, access_token, refresh_token, token_expires_at, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        link.id,
                        link.user_id,
                        link.provider,
                        link.provider_user_id,
                        link.email,
                        link.display_name,
                        link.avatar_url,
                        link.access_token,
                        link.refresh_token,
                        link.token_expires_at,
                        link.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "provider identity already linked", {"field": "provider_user_id"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": link.user_id})
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
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE oauth_links
                SET access_token = %s,
                    refresh_token = COALESCE(%s, refresh_token),
                    token_expires_at = %s,
                    email = COALESCE(%s, email),
                    display_name = COALESCE(%s, display_name),
                    avatar_url = COALESCE(%s, avatar_url),
                    updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (
                    access_token,
                    refresh_token,
                    token_expires_at,
                    email,
                    display_name,
                    avatar_url,
                    now or datetime.now(timezone.utc),
                    link_id,
                ),
            ).fetchone()
        return self._link_from_row(row) if row else None

    def list_oauth_links(self, user_id: str) -> List[OAuthLink]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM oauth_links WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._link_from_row(row) for row in rows]

    def delete_oauth_link(self, user_id: str, provider: str) -> Optional[OAuthLink]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM oauth_links WHERE user_id = %s AND provider = %s RETURNING *",
                (user_id, provider),
            ).fetchone()
        return self._link_from_row(row) if row else None

    def verify_connection(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except StoreUnavailable:
            return False
