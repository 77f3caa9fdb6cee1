from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from warden.logging import get_logger
from warden.service.clock import Clock, utc_now
from warden.service.results import Failure, Result, Success
from warden.storage.base import AuthStore
from warden.storage.errors import StoreUnavailable
from warden.storage.models import LoginAttempt

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockoutState:
    locked: bool
    remaining_minutes: int = 0


@dataclass(frozen=True)
class LockoutStatus:
    failed_attempts: int
    max_attempts: int
    locked: bool
    remaining_minutes: int
    attempts_remaining: int

    def to_dict(self) -> dict:
        return {
            "failed_attempts": self.failed_attempts,
            "max_attempts": self.max_attempts,
            "locked": self.locked,
            "remaining_minutes": self.remaining_minutes,
            "attempts_remaining": self.attempts_remaining,
        }


class LockoutTracker:
    """Sliding-window brute-force lockout keyed by identifier.

    ``failed_count`` tallies failures inside the last ``window_minutes``.
    Once that reaches ``max_attempts`` the identifier is locked until
    ``lockout_minutes`` after its most recent failure. The window and the
    duration are anchored differently, so failures that have slid out of
    the window can still hold a lock through the duration check.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        max_attempts: int = 5,
        window_minutes: int = 15,
        lockout_minutes: int = 30,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.window = timedelta(minutes=window_minutes)
        self.lockout_duration = timedelta(minutes=lockout_minutes)
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    @property
    def retention(self) -> timedelta:
        """Attempts older than this are purged."""
        return 2 * max(self.window, self.lockout_duration)

    def record_attempt(
        self, identifier: str, ip_address: Optional[str], success: bool
    ) -> Result[None, Exception]:
        """Append an attempt row. Store failures come back as a Failure, never raised."""
        attempt = LoginAttempt(
            id=str(uuid.uuid4()),
            identifier=identifier,
            ip_address=ip_address,
            attempted_at=self._now(),
            success=success,
        )
        try:
            self.store.record_login_attempt(attempt)
        except Exception as exc:
            logger.warning(
                "login_attempt_record_failed",
                identifier=identifier,
                success=success,
                error=str(exc),
            )
            return Failure(error=exc)
        return Success(value=None)

    def failed_count(self, identifier: str) -> int:
        return self.store.count_failed_attempts(identifier, self._now() - self.window)

    def check(self, identifier: str) -> LockoutState:
        now = self._now()
        failed = self.store.count_failed_attempts(identifier, now - self.window)
        return self._evaluate(identifier, failed, now)

    def _evaluate(self, identifier: str, failed: int, now: datetime) -> LockoutState:
        if failed < self.max_attempts:
            return LockoutState(locked=False)
        last_failure = self.store.latest_failed_attempt(identifier)
        if last_failure is None:
            return LockoutState(locked=False)
        lockout_end = last_failure + self.lockout_duration
        if lockout_end <= now:
            return LockoutState(locked=False)
        remaining = math.ceil((lockout_end - now).total_seconds() / 60)
        return LockoutState(locked=True, remaining_minutes=max(1, remaining))

    def is_locked_out(self, identifier: str) -> bool:
        return self.check(identifier).locked

    def clear_lockout(self, identifier: str) -> int:
        """Admin override: forget every attempt for ``identifier``."""
        removed = self.store.delete_login_attempts(identifier)
        logger.info("lockout_cleared", identifier=identifier, attempts_removed=removed)
        return removed

    def status(self, identifier: str) -> LockoutStatus:
        now = self._now()
        failed = self.store.count_failed_attempts(identifier, now - self.window)
        state = self._evaluate(identifier, failed, now)
        return LockoutStatus(
            failed_attempts=failed,
            max_attempts=self.max_attempts,
            locked=state.locked,
            remaining_minutes=state.remaining_minutes,
            attempts_remaining=max(0, self.max_attempts - failed),
        )

    def purge(self) -> int:
        """Delete attempts past the retention horizon. Runs off the request path."""
        try:
            removed = self.store.purge_login_attempts(self._now() - self.retention)
        except StoreUnavailable as exc:
            logger.error("login_attempt_purge_failed", error=str(exc))
            return 0
        if removed:
            logger.info("login_attempts_purged", count=removed)
        return removed
