from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation, StoreUnavailable
from warden.storage.models import Role, Session
from warden.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self):
        self.statements = []
        self.responses = []
        self.raise_on_execute = None

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.raise_on_execute is not None:
            raise self.raise_on_execute
        return self.responses.pop(0) if self.responses else FakeCursor()


class FakePool:
    def __init__(self, conn=None, error=None):
        self.conn = conn or FakeConnection()
        self.error = error

    @contextmanager
    def connection(self):
        if self.error is not None:
            raise self.error
        yield self.conn


def _store(pool=None):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.logger = get_logger("test")
    store.pool = pool or FakePool()
    return store


def test_schema_creates_all_tables():
    store = _store()
    store._ensure_schema()
    sql = " ".join(statement for statement, _ in store.pool.conn.statements)
    for table in ("auth_users", "auth_sessions", "login_attempts", "oauth_links"):
        assert f"CREATE TABLE IF NOT EXISTS {table}" in sql
    assert "ON DELETE CASCADE" in sql


def test_create_user_normalizes_and_inserts():
    store = _store()
    user = store.create_user("  Scout ", "hash", role=Role.GM, now=NOW)
    assert user.username == "scout"
    sql, params = store.pool.conn.statements[-1]
    assert sql.startswith("INSERT INTO auth_users")
    assert params == (user.id, "scout", "hash", None, "gm", NOW)


def test_unique_violation_becomes_constraint_violation():
    store = _store()
    store.pool.conn.raise_on_execute = errors.UniqueViolation("duplicate key")
    with pytest.raises(ConstraintViolation):
        store.create_user("scout", "hash")


def test_session_foreign_key_violation():
    store = _store()
    store.pool.conn.raise_on_execute = errors.ForeignKeyViolation("missing user")
    session = Session.new("user-1", "digest", now=NOW)
    with pytest.raises(ConstraintViolation):
        store.create_session(session)


def test_operational_error_becomes_store_unavailable():
    store = _store(FakePool(error=errors.OperationalError("connection refused")))
    with pytest.raises(StoreUnavailable):
        store.get_user("user-1")
    assert store.verify_connection() is False


def test_active_session_lookup_filters_expiry():
    store = _store()
    store.pool.conn.responses.append(
        FakeCursor(
            rows=[
                {
                    "id": "sess-1",
                    "user_id": "user-1",
                    "token_hash": "digest",
                    "created_at": NOW.replace(tzinfo=None),
                    "expires_at": NOW + timedelta(days=7),
                    "last_used_at": None,
                    "ip_address": "10.0.0.1",
                    "user_agent": None,
                }
            ]
        )
    )
    session = store.get_active_session("digest", NOW)
    sql, params = store.pool.conn.statements[-1]
    assert "expires_at > %s" in sql
    assert params == ("digest", NOW)
    assert session.created_at.tzinfo is not None
    assert session.ip_address == "10.0.0.1"


def test_count_failed_attempts_uses_window():
    store = _store()
    store.pool.conn.responses.append(FakeCursor(rows=[{"failed": 4}]))
    assert store.count_failed_attempts("scout", NOW - timedelta(minutes=15)) == 4
    sql, _ = store.pool.conn.statements[-1]
    assert "success = FALSE" in sql and "attempted_at > %s" in sql


def test_latest_failed_attempt_empty():
    store = _store()
    store.pool.conn.responses.append(FakeCursor(rows=[{"last_failed": None}]))
    assert store.latest_failed_attempt("scout") is None


def test_delete_counts_use_rowcount():
    store = _store()
    store.pool.conn.responses.append(FakeCursor(rowcount=3))
    assert store.delete_user_sessions("user-1") == 3
    store.pool.conn.responses.append(FakeCursor(rowcount=0))
    assert store.delete_session_by_hash("digest") is False


def test_update_oauth_tokens_keeps_refresh_token():
    store = _store()
    store.update_oauth_link_tokens(
        "link-1", access_token="a", refresh_token=None, token_expires_at=None, now=NOW
    )
    sql, params = store.pool.conn.statements[-1]
    assert "refresh_token = COALESCE(%s, refresh_token)" in sql
    assert params[-1] == "link-1"


def test_delete_oauth_link_returns_row():
    store = _store()
    store.pool.conn.responses.append(
        FakeCursor(
            rows=[
                {
                    "id": "link-1",
                    "user_id": "user-1",
                    "provider": "google",
                    "provider_user_id": "g-1",
                    "created_at": NOW,
                    "access_token": "enc",
                }
            ]
        )
    )
    link = store.delete_oauth_link("user-1", "google")
    assert link.provider_user_id == "g-1"
    assert link.access_token == "enc"
    assert "RETURNING *" in store.pool.conn.statements[-1][0]
