from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

# Every time-bounded state (session expiry, lockout window, OAuth transaction
# TTL) reads the same injected clock so they agree on "now".
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
