from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from warden.logging import get_logger
from warden.service.clock import Clock, utc_now
from warden.service.tokens import TokenSigner, token_digest
from warden.storage.base import AuthStore
from warden.storage.errors import StoreUnavailable
from warden.storage.models import Role, Session, User

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenClaims:
    """Verified claims of a session token."""

    subject: str
    username: str
    role: Role
    session_id: str
    expires_at: datetime

    @classmethod
    def from_payload(cls, payload: dict) -> "TokenClaims":
        return cls(
            subject=str(payload["sub"]),
            username=str(payload.get("username", "")),
            role=Role(payload["role"]),
            session_id=str(payload["sid"]),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
        )


@dataclass(frozen=True)
class IssuedToken:
    token: str
    session_id: str
    expires_at: datetime


class SessionRegistry:
    """Hybrid session tokens: a signed JWT plus a store row keyed by its digest.

    A token is valid only while both hold: the signature, issuer, audience
    and expiry check out, and an unexpired row exists for the SHA-256 digest
    of the full token string. Deleting the row revokes the token before its
    own expiry.
    """

    def __init__(
        self,
        store: AuthStore,
        signer: TokenSigner,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.signer = signer
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def issue(
        self,
        user: User,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> IssuedToken:
        """Sign a token for ``user`` and persist its session row before returning it.

        Raises if the row cannot be written; no token escapes without a row.
        """
        now = self._now()
        session_id = str(uuid.uuid4())
        token, expires_at = self.signer.sign(
            subject=user.id,
            username=user.username,
            role=user.role,
            session_id=session_id,
            now=now,
        )
        session = Session(
            id=session_id,
            user_id=user.id,
            token_hash=token_digest(token),
            created_at=now,
            expires_at=expires_at,
            last_used_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.store.create_session(session)
        logger.info("session_issued", user_id=user.id, session_id=session_id)
        return IssuedToken(token=token, session_id=session_id, expires_at=expires_at)

    def verify(self, token: Optional[str]) -> Optional[TokenClaims]:
        """Return claims for a live token, or None.

        Cryptographic checks run first so malformed or forged tokens never
        reach the store.
        """
        if not token:
            return None
        now = self._now()
        payload = self.signer.decode(token, now=now)
        if payload is None:
            return None
        try:
            session = self.store.get_active_session(token_digest(token), now)
        except StoreUnavailable as exc:
            logger.error("session_lookup_failed", error=str(exc))
            return None
        if session is None or session.id != payload.get("sid"):
            return None
        self._touch(session.id, now)
        return TokenClaims.from_payload(payload)

    def _touch(self, session_id: str, now: datetime) -> None:
        # last_used_at is bookkeeping; failure never fails verification
        try:
            self.store.touch_session(session_id, now)
        except Exception as exc:
            logger.warning("session_touch_failed", session_id=session_id, error=str(exc))

    def revoke(self, token: Optional[str]) -> bool:
        """Delete the session row for ``token``. Returns False when none existed."""
        if not token:
            return False
        revoked = self.store.delete_session_by_hash(token_digest(token))
        if revoked:
            logger.info("session_revoked")
        return revoked

    def revoke_all(self, user_id: str) -> int:
        count = self.store.delete_user_sessions(user_id)
        logger.info("sessions_revoked_for_user", user_id=user_id, count=count)
        return count

    def active_sessions(self, user_id: str) -> List[Session]:
        return self.store.list_user_sessions(user_id, self._now())

    def sweep_expired(self) -> int:
        """Delete session rows past their expiry. Runs off the request path."""
        removed = self.store.delete_expired_sessions(self._now())
        if removed:
            logger.info("expired_sessions_swept", count=removed)
        return removed
