from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from warden.config import AuthMode, Settings, get_settings, reset_settings_cache
from warden.logging import get_logger
from warden.service.clock import Clock, utc_now
from warden.service.credentials import CredentialService
from warden.service.lockout import LockoutTracker
from warden.service.oauth import OAuthCoordinator
from warden.service.passwords import PasswordHasherService
from warden.service.sessions import SessionRegistry
from warden.service.tokens import TokenSigner
from warden.service.vault import TokenVault
from warden.storage.base import AuthStore
from warden.storage.memory import MemoryStore
from warden.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for safe logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: AuthStore | None = None,
        clock: Clock = utc_now,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            auth_mode=self.settings.auth_mode.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if store is None:
            try:
                store = (
                    MemoryStore()
                    if self.settings.use_memory_store
                    else PostgresStore(self.settings.database_url)
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type="memory" if self.settings.use_memory_store else "postgres",
                    dsn=_mask_url_password(self.settings.database_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
        self.store = store

        # A lenient deployment without a usable secret gets a signer that
        # rejects everything rather than one keyed with a weak secret.
        self.signer = TokenSigner(
            self.settings.jwt_secret if self.settings.secret_usable else None,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            ttl_minutes=self.settings.token_ttl_minutes,
        )
        self.sessions = SessionRegistry(self.store, self.signer, clock=clock)
        self.lockout = LockoutTracker(
            self.store,
            max_attempts=self.settings.lockout_max_attempts,
            window_minutes=self.settings.lockout_window_minutes,
            lockout_minutes=self.settings.lockout_duration_minutes,
            clock=clock,
        )
        self.hasher = PasswordHasherService(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost=self.settings.password_hash_memory_cost,
        )
        self.vault = TokenVault(self.settings.token_encryption_key or self.settings.jwt_secret)
        self.credentials = CredentialService(
            self.store,
            self.sessions,
            self.lockout,
            self.hasher,
            vault=self.vault,
            enabled=self.settings.auth_mode is not AuthMode.DISABLED,
            clock=clock,
        )
        self.oauth = OAuthCoordinator(self.credentials, self.settings, clock=clock)
        logger.info(
            "runtime_init_complete",
            store_type=type(self.store).__name__,
            signer_configured=self.signer.configured,
            google_configured=self.settings.google_configured,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(instance: Runtime) -> Runtime:
    """Install a prebuilt runtime, e.g. one with a simulated clock."""
    global runtime
    with _runtime_lock:
        runtime = instance
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
