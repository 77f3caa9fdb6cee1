from datetime import timedelta

import pytest

from warden.service.sessions import SessionRegistry
from warden.service.tokens import SigningUnavailable, TokenSigner, token_digest
from warden.storage.errors import StoreUnavailable
from warden.storage.memory import MemoryStore
from warden.storage.models import Role

TEST_SECRET = "unit-test-signing-secret-of-sufficient-length"


def _registry(store, clock, secret=TEST_SECRET, ttl_minutes=60):
    signer = TokenSigner(secret, issuer="warden", audience="warden-clients", ttl_minutes=ttl_minutes)
    return SessionRegistry(store, signer, clock=clock)


@pytest.fixture
def user(store, clock):
    return store.create_user("scout", "hash", now=clock())


def test_issue_persists_row_keyed_by_digest(store, clock, user):
    registry = _registry(store, clock)
    issued = registry.issue(user, ip_address="10.0.0.1", user_agent="pytest")
    row = store.get_active_session(token_digest(issued.token), clock())
    assert row is not None
    assert row.id == issued.session_id
    assert row.user_id == user.id
    assert row.ip_address == "10.0.0.1"
    assert row.expires_at == issued.expires_at == clock() + timedelta(minutes=60)
    assert issued.token not in {s.token_hash for s in store.sessions.values()}


def test_verify_returns_claims(store, clock, user):
    registry = _registry(store, clock)
    issued = registry.issue(user)
    claims = registry.verify(issued.token)
    assert claims.subject == user.id
    assert claims.username == "scout"
    assert claims.role is Role.PLAYER
    assert claims.session_id == issued.session_id


def test_verify_touches_last_used(store, clock, user):
    registry = _registry(store, clock)
    issued = registry.issue(user)
    later = clock.advance(minutes=5)
    registry.verify(issued.token)
    assert store.sessions[issued.session_id].last_used_at == later


def test_revocation_before_expiry(store, clock, user):
    registry = _registry(store, clock)
    issued = registry.issue(user)
    assert registry.signer.decode(issued.token, now=clock()) is not None
    assert registry.revoke(issued.token) is True
    assert registry.verify(issued.token) is None
    assert registry.revoke(issued.token) is False


def test_token_without_row_is_invalid(store, clock, user):
    registry = _registry(store, clock)
    token, _ = registry.signer.sign(
        subject=user.id, username=user.username, role=user.role, session_id="forged", now=clock()
    )
    assert registry.verify(token) is None


def test_expired_row_rejected(store, clock, user):
    registry = _registry(store, clock, ttl_minutes=10)
    issued = registry.issue(user)
    clock.advance(minutes=11)
    assert registry.verify(issued.token) is None


def test_revoke_all(store, clock, user):
    registry = _registry(store, clock)
    first = registry.issue(user)
    second = registry.issue(user)
    assert registry.revoke_all(user.id) == 2
    assert registry.verify(first.token) is None
    assert registry.verify(second.token) is None


def test_sweep_expired(store, clock, user):
    registry = _registry(store, clock, ttl_minutes=10)
    registry.issue(user)
    clock.advance(minutes=5)
    registry.issue(user)
    clock.advance(minutes=6)
    assert registry.sweep_expired() == 1
    assert len(store.sessions) == 1
    assert len(registry.active_sessions(user.id)) == 1


def test_issue_without_secret_creates_no_row(store, clock, user):
    registry = _registry(store, clock, secret=None)
    with pytest.raises(SigningUnavailable):
        registry.issue(user)
    assert store.sessions == {}


class _FlakyTouchStore(MemoryStore):
    def touch_session(self, session_id, now):
        raise StoreUnavailable("touch failed")


def test_touch_failure_never_fails_verify(clock):
    store = _FlakyTouchStore()
    user = store.create_user("scout", "hash", now=clock())
    registry = _registry(store, clock)
    issued = registry.issue(user)
    assert registry.verify(issued.token) is not None


class _DownStore(MemoryStore):
    down = False

    def get_active_session(self, token_hash, now):
        if self.down:
            raise StoreUnavailable("connection refused")
        return super().get_active_session(token_hash, now)


def test_store_outage_reads_as_invalid(clock):
    store = _DownStore()
    user = store.create_user("scout", "hash", now=clock())
    registry = _registry(store, clock)
    issued = registry.issue(user)
    store.down = True
    assert registry.verify(issued.token) is None


def test_garbage_token_never_reaches_store(clock):
    store = _DownStore()
    store.down = True
    registry = _registry(store, clock)
    assert registry.verify("not-a-token") is None
    assert registry.verify(None) is None
