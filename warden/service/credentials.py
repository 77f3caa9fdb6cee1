from __future__ import annotations

import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from warden.logging import get_logger
from warden.service.clock import Clock, utc_now
from warden.service.errors import (
    AuthDisabledError,
    IncorrectPasswordError,
    InvalidCredentialsError,
    LockedOutError,
    NotFoundError,
    ServerError,
    ServiceError,
    UsernameTakenError,
    ValidationError,
)
from warden.service.lockout import LockoutTracker
from warden.service.passwords import PasswordHasherService
from warden.service.profiles import ProviderProfile, ProviderTokens
from warden.service.results import Failure, Result, Success
from warden.service.sessions import IssuedToken, SessionRegistry
from warden.service.tokens import SigningUnavailable
from warden.service.vault import TokenVault
from warden.storage.base import AuthStore
from warden.storage.errors import ConstraintViolation, StoreUnavailable
from warden.storage.models import (
    OAuthLink,
    PublicUser,
    Role,
    User,
    normalize_username,
)

logger = get_logger(__name__)

MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 8
_GENERATED_USERNAME_MAX = 20
_USERNAME_ATTEMPTS = 5


@dataclass(frozen=True)
class LoginResult:
    user: PublicUser
    token: str
    session_id: str
    expires_at: datetime

    @classmethod
    def build(cls, user: User, issued: IssuedToken) -> "LoginResult":
        return cls(
            user=user.public(),
            token=issued.token,
            session_id=issued.session_id,
            expires_at=issued.expires_at,
        )


def username_seed(base: str) -> str:
    """Reduce a display name or email to a candidate username."""
    seed = re.sub(r"@.*$", "", (base or "").lower())
    seed = re.sub(r"[^a-z0-9]", "", seed)[:_GENERATED_USERNAME_MAX]
    if len(seed) < MIN_USERNAME_LENGTH:
        seed = "user"
    return seed


class CredentialService:
    """Register, login, logout and password change over the store.

    Expected outcomes (taken username, wrong password, lockout) come back as
    ``Failure`` results. Store outages on the login path surface as
    ``InvalidCredentialsError`` so an outage looks like any other failed login.
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionRegistry,
        lockout: LockoutTracker,
        hasher: PasswordHasherService,
        *,
        vault: TokenVault | None = None,
        enabled: bool = True,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.lockout = lockout
        self.hasher = hasher
        self.vault = vault or TokenVault(None)
        self.enabled = enabled
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    async def register(
        self,
        username: str,
        password: str,
        *,
        email: Optional[str] = None,
        role: Role = Role.PLAYER,
    ) -> Result[PublicUser, ServiceError]:
        if not self.enabled:
            return Failure(error=AuthDisabledError())
        normalized = normalize_username(username or "")
        if len(normalized) < MIN_USERNAME_LENGTH:
            return Failure(
                error=ValidationError(
                    f"username must be at least {MIN_USERNAME_LENGTH} characters",
                    detail={"field": "username"},
                )
            )
        if len(password or "") < MIN_PASSWORD_LENGTH:
            return Failure(
                error=ValidationError(
                    f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                    detail={"field": "password"},
                )
            )
        try:
            if self.store.get_user_by_username(normalized) is not None:
                return Failure(error=UsernameTakenError("username already taken"))
            password_hash = await self.hasher.hash(password)
            user = self.store.create_user(
                normalized, password_hash, email=email, role=role, now=self._now()
            )
        except ConstraintViolation:
            # Lost a race with a concurrent registration of the same name
            return Failure(error=UsernameTakenError("username already taken"))
        except StoreUnavailable as exc:
            logger.error("register_store_failed", error=str(exc))
            return Failure(error=ServerError("registration failed"))
        logger.info("user_registered", user_id=user.id, role=user.role.value)
        return Success(value=user.public())

    async def login(
        self,
        username: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[LoginResult, ServiceError]:
        if not self.enabled:
            return Failure(error=AuthDisabledError())
        identifier = normalize_username(username or "")
        if not identifier or not password:
            return Failure(error=ValidationError("username and password are required"))

        # Lockout is decided before the user lookup so timing never reveals
        # whether the account exists.
        try:
            state = self.lockout.check(identifier)
        except StoreUnavailable as exc:
            logger.error("login_lockout_check_failed", error=str(exc))
            return Failure(error=InvalidCredentialsError())
        if state.locked:
            logger.warning(
                "login_locked_out",
                identifier=identifier,
                remaining_minutes=state.remaining_minutes,
                ip_address=ip_address,
            )
            return Failure(error=LockedOutError(state.remaining_minutes))

        try:
            user = self.store.get_user_by_username(identifier)
        except StoreUnavailable as exc:
            logger.error("login_user_lookup_failed", error=str(exc))
            return Failure(error=InvalidCredentialsError())

        password_ok = await self.hasher.verify(user.password_hash if user else None, password)
        if user is None or not password_ok:
            self.lockout.record_attempt(identifier, ip_address, False)
            logger.info("login_failed", identifier=identifier, ip_address=ip_address)
            return Failure(error=InvalidCredentialsError())

        self.lockout.record_attempt(identifier, ip_address, True)
        return self._issue(user, ip_address=ip_address, user_agent=user_agent)

    def _issue(
        self,
        user: User,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[LoginResult, ServiceError]:
        try:
            issued = self.sessions.issue(user, ip_address=ip_address, user_agent=user_agent)
        except (StoreUnavailable, ConstraintViolation, SigningUnavailable) as exc:
            logger.error("session_issue_failed", user_id=user.id, error=str(exc))
            return Failure(error=InvalidCredentialsError())
        logger.info("login_succeeded", user_id=user.id, session_id=issued.session_id)
        return Success(value=LoginResult.build(user, issued))

    def logout(self, token: Optional[str]) -> bool:
        """Revoke ``token``. A second call for the same token returns False."""
        try:
            return self.sessions.revoke(token)
        except StoreUnavailable as exc:
            logger.error("logout_store_failed", error=str(exc))
            return False

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> Result[int, ServiceError]:
        """Re-verify, re-hash, then revoke every session of the user.

        Returns the number of sessions revoked. Revocation strictly follows
        the hash update.
        """
        try:
            user = self.store.get_user(user_id)
        except StoreUnavailable as exc:
            logger.error("change_password_lookup_failed", error=str(exc))
            return Failure(error=ServerError("password change failed"))
        if user is None:
            return Failure(error=NotFoundError("user not found"))
        if not await self.hasher.verify(user.password_hash, current_password or ""):
            logger.info("change_password_rejected", user_id=user_id)
            return Failure(error=IncorrectPasswordError())
        if len(new_password or "") < MIN_PASSWORD_LENGTH:
            return Failure(
                error=ValidationError(
                    f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                    detail={"field": "new_password"},
                )
            )
        new_hash = await self.hasher.hash(new_password)
        try:
            if not self.store.update_password(user_id, new_hash, now=self._now()):
                return Failure(error=NotFoundError("user not found"))
            revoked = self.sessions.revoke_all(user_id)
        except StoreUnavailable as exc:
            logger.error("change_password_store_failed", user_id=user_id, error=str(exc))
            return Failure(error=ServerError("password change failed"))
        logger.info("password_changed", user_id=user_id, sessions_revoked=revoked)
        return Success(value=revoked)

    def verify_and_get_user(self, token: Optional[str]) -> Optional[PublicUser]:
        claims = self.sessions.verify(token)
        if claims is None:
            return None
        return self.get_user_by_id(claims.subject)

    def get_user_by_id(self, user_id: str) -> Optional[PublicUser]:
        try:
            user = self.store.get_user(user_id)
        except StoreUnavailable as exc:
            logger.error("user_lookup_failed", error=str(exc))
            return None
        return user.public() if user else None

    def get_user_by_username(self, username: str) -> Optional[PublicUser]:
        try:
            user = self.store.get_user_by_username(normalize_username(username or ""))
        except StoreUnavailable as exc:
            logger.error("user_lookup_failed", error=str(exc))
            return None
        return user.public() if user else None

    def delete_user(self, user_id: str) -> bool:
        """Delete a user; sessions and OAuth links go with it."""
        deleted = self.store.delete_user(user_id)
        if deleted:
            logger.info("user_deleted", user_id=user_id)
        return deleted

    # federation
    def _unique_username(self, base: str) -> str:
        seed = username_seed(base)
        if self.store.get_user_by_username(seed) is None:
            return seed
        return f"{seed}_{secrets.token_hex(3)}"

    def _create_federated_user(self, profile: ProviderProfile) -> User:
        base = profile.display_name or profile.email or profile.provider
        for _ in range(_USERNAME_ATTEMPTS):
            try:
                return self.store.create_user(
                    self._unique_username(base),
                    None,
                    email=profile.email,
                    now=self._now(),
                )
            except ConstraintViolation:
                continue
        raise ConstraintViolation("could not allocate a unique username", {"field": "username"})

    def find_or_create_from_oauth(
        self,
        profile: ProviderProfile,
        tokens: ProviderTokens,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[LoginResult, ServiceError]:
        """Match ``(provider, provider_user_id)`` to a local user, creating one if needed.

        Existing links get fresh tokens and profile fields. Accounts are never
        linked by email alone.
        """
        if not self.enabled:
            return Failure(error=AuthDisabledError())
        if not profile.provider or not profile.provider_user_id:
            return Failure(error=ValidationError("invalid provider profile"))
        now = self._now()
        access_token = self.vault.encrypt(tokens.access_token)
        refresh_token = self.vault.encrypt(tokens.refresh_token)
        try:
            link = self.store.get_oauth_link(profile.provider, profile.provider_user_id)
            if link is not None:
                self.store.update_oauth_link_tokens(
                    link.id,
                    access_token=access_token,
                    refresh_token=refresh_token,
                    token_expires_at=tokens.expires_at(now),
                    email=profile.email,
                    display_name=profile.display_name,
                    avatar_url=profile.avatar_url,
                    now=now,
                )
                user = self.store.get_user(link.user_id)
                if user is None:
                    return Failure(error=ServerError("linked user missing"))
            else:
                user = self._create_federated_user(profile)
                try:
                    self.store.create_oauth_link(
                        OAuthLink(
                            id=str(uuid.uuid4()),
                            user_id=user.id,
                            provider=profile.provider,
                            provider_user_id=profile.provider_user_id,
                            email=profile.email,
                            display_name=profile.display_name,
                            avatar_url=profile.avatar_url,
                            access_token=access_token,
                            refresh_token=refresh_token,
                            token_expires_at=tokens.expires_at(now),
                            created_at=now,
                        )
                    )
                except ConstraintViolation:
                    # A concurrent callback linked this identity first; use its user
                    self.store.delete_user(user.id)
                    link = self.store.get_oauth_link(profile.provider, profile.provider_user_id)
                    user = self.store.get_user(link.user_id) if link else None
                    if user is None:
                        return Failure(error=ServerError("provider link failed"))
                else:
                    logger.info(
                        "oauth_user_created",
                        user_id=user.id,
                        provider=profile.provider,
                    )
        except (StoreUnavailable, ConstraintViolation) as exc:
            logger.error("oauth_link_failed", provider=profile.provider, error=str(exc))
            return Failure(error=ServerError("provider sign-in failed"))
        return self._issue(user, ip_address=ip_address, user_agent=user_agent)

    def linked_providers(self, user_id: str) -> List[dict]:
        return [link.summary() for link in self.store.list_oauth_links(user_id)]

    def unlink_provider(self, user_id: str, provider: str) -> Result[OAuthLink, ServiceError]:
        """Remove the link and return it with its provider tokens decrypted.

        The last provider of an account without a password cannot be unlinked.
        """
        user = self.store.get_user(user_id)
        if user is None:
            return Failure(error=NotFoundError("user not found"))
        links = self.store.list_oauth_links(user_id)
        if not any(link.provider == provider for link in links):
            return Failure(error=NotFoundError("provider not linked"))
        if not user.has_password and len(links) == 1:
            return Failure(
                error=ValidationError(
                    "cannot unlink the only sign-in method", detail={"provider": provider}
                )
            )
        link = self.store.delete_oauth_link(user_id, provider)
        if link is None:
            return Failure(error=NotFoundError("provider not linked"))
        logger.info("oauth_provider_unlinked", user_id=user_id, provider=provider)
        link.access_token = self.vault.decrypt(link.access_token)
        link.refresh_token = self.vault.decrypt(link.refresh_token)
        return Success(value=link)
