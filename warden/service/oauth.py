from __future__ import annotations

import base64
import json
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional
from urllib.parse import urlencode, urlparse

import httpx

from warden.config import Settings
from warden.logging import get_logger
from warden.service import pkce
from warden.service.clock import Clock, utc_now
from warden.service.credentials import CredentialService, LoginResult
from warden.service.errors import (
    AuthDisabledError,
    ExchangeFailedError,
    InvalidStateError,
    NotFoundError,
    OAuthError,
    OAuthNotConfiguredError,
    ProfileFetchFailedError,
    ServiceError,
    ValidationError,
)
from warden.service.profiles import ProviderProfile, ProviderTokens
from warden.service.results import Failure, Result, Success

logger = get_logger(__name__)

# OAuth provider configurations
OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v3/userinfo",
        "revoke_url": "https://oauth2.googleapis.com/revoke",
        "scope": "openid email profile",
    },
}


class OAuthFlowState(str, Enum):
    STARTED = "started"
    CALLBACK_RECEIVED = "callback_received"
    EXCHANGED = "exchanged"
    PROFILE_FETCHED = "profile_fetched"
    LINKED = "linked"
    FAILED = "failed"


_FLOW_TRANSITIONS = {
    OAuthFlowState.STARTED: {OAuthFlowState.CALLBACK_RECEIVED, OAuthFlowState.FAILED},
    OAuthFlowState.CALLBACK_RECEIVED: {OAuthFlowState.EXCHANGED, OAuthFlowState.FAILED},
    OAuthFlowState.EXCHANGED: {OAuthFlowState.PROFILE_FETCHED, OAuthFlowState.FAILED},
    OAuthFlowState.PROFILE_FETCHED: {OAuthFlowState.LINKED, OAuthFlowState.FAILED},
    OAuthFlowState.LINKED: set(),
    OAuthFlowState.FAILED: set(),
}


class OAuthFlow:
    """Tracks one callback through the federation states and logs each step."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        self.state = OAuthFlowState.STARTED

    def advance(self, new_state: OAuthFlowState, **fields: Any) -> None:
        if new_state not in _FLOW_TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal oauth transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        log_fn = logger.warning if new_state is OAuthFlowState.FAILED else logger.info
        log_fn("oauth_flow_state", provider=self.provider, state=new_state.value, **fields)


@dataclass(frozen=True)
class OAuthTransaction:
    state: str
    provider: str
    verifier: str
    redirect_uri: str
    nonce: str
    created_at: datetime


@dataclass(frozen=True)
class AuthorizationRequest:
    provider: str
    authorization_url: str
    state: str


class TransactionCache:
    """Pending OAuth transactions keyed by state.

    Lock-guarded, bounded (oldest evicted first) and TTL-limited. ``pop`` is
    the only read, so a state can be consumed at most once.
    """

    def __init__(
        self,
        *,
        ttl_minutes: int = 10,
        max_entries: int = 10000,
        clock: Clock = utc_now,
    ) -> None:
        self.ttl = timedelta(minutes=ttl_minutes)
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, OAuthTransaction]" = OrderedDict()
        self._lock = threading.Lock()

    def _expired(self, txn: OAuthTransaction, now: datetime) -> bool:
        return txn.created_at + self.ttl <= now

    def put(self, txn: OAuthTransaction) -> None:
        with self._lock:
            self._entries[txn.state] = txn
            self._entries.move_to_end(txn.state)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                logger.warning("oauth_transaction_evicted", reason="capacity")

    def pop(self, state: str) -> Optional[OAuthTransaction]:
        """Remove and return the transaction for ``state`` if it is still fresh."""
        with self._lock:
            txn = self._entries.pop(state, None)
        if txn is None or self._expired(txn, self._clock()):
            return None
        return txn

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [state for state, txn in self._entries.items() if self._expired(txn, now)]
            for state in stale:
                self._entries.pop(state, None)
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, state: object) -> bool:
        with self._lock:
            return state in self._entries


def _parse_userinfo(provider: str, userinfo: dict) -> ProviderProfile:
    """Parse user info from OAuth provider into the normalized profile."""
    if provider == "google":
        return ProviderProfile(
            provider=provider,
            provider_user_id=str(userinfo.get("sub") or ""),
            email=userinfo.get("email"),
            email_verified=bool(userinfo.get("email_verified", False)),
            display_name=userinfo.get("name"),
            given_name=userinfo.get("given_name"),
            family_name=userinfo.get("family_name"),
            avatar_url=userinfo.get("picture"),
            locale=userinfo.get("locale"),
        )
    return ProviderProfile(
        provider=provider,
        provider_user_id=str(userinfo.get("sub") or userinfo.get("id") or ""),
        email=userinfo.get("email"),
    )


def _id_token_nonce(id_token: Optional[str]) -> Optional[str]:
    # The ID token arrives straight from the token endpoint over TLS, so only
    # its payload is read here.
    if not id_token:
        return None
    try:
        payload_b64 = id_token.split(".")[1]
        padding = "=" * (-len(payload_b64) % 4)
        payload = json.loads(base64.urlsafe_b64decode(payload_b64 + padding))
    except (IndexError, ValueError, UnicodeDecodeError):
        return None
    return payload.get("nonce") if isinstance(payload, dict) else None


class OAuthCoordinator:
    """Authorization Code + PKCE federation against external providers.

    ``start`` records a transaction under a fresh state; ``callback`` consumes
    it before any network call, exchanges the code, fetches the profile and
    hands both to the credential service. Refresh and revoke are stateless
    proxies to the provider and never touch local sessions.
    """

    def __init__(
        self,
        credentials: CredentialService,
        settings: Settings,
        *,
        transactions: TransactionCache | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.credentials = credentials
        self.settings = settings
        self._clock = clock
        if transactions is None:
            transactions = TransactionCache(
                ttl_minutes=settings.oauth_state_ttl_minutes,
                max_entries=settings.oauth_max_pending,
                clock=clock,
            )
        self.transactions = transactions

    def _now(self) -> datetime:
        return self._clock()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.oauth_http_timeout_seconds),
            follow_redirects=False,
        )

    def _get_oauth_credentials(self, provider: str) -> tuple[Optional[str], Optional[str]]:
        if provider == "google":
            return self.settings.oauth_google_client_id, self.settings.oauth_google_client_secret
        return None, None

    def is_configured(self, provider: str) -> bool:
        client_id, client_secret = self._get_oauth_credentials(provider)
        return provider in OAUTH_PROVIDERS and bool(client_id and client_secret)

    def providers(self) -> list[dict]:
        return [
            {"name": name, "enabled": self.is_configured(name)}
            for name in OAUTH_PROVIDERS
        ]

    @staticmethod
    def _validate_redirect_uri(redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"}:
            raise ValueError("OAuth redirect URI must be http(s)")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValueError("Insecure redirect URI not allowed outside localhost")
        if not parsed.netloc:
            raise ValueError("OAuth redirect URI must include host")
        return redirect_uri

    def _check_provider(self, provider: str) -> Optional[ServiceError]:
        if provider not in OAUTH_PROVIDERS:
            return NotFoundError(f"unsupported OAuth provider: {provider}")
        if not self.is_configured(provider):
            logger.warning("oauth_not_configured", provider=provider)
            return OAuthNotConfiguredError(f"OAuth provider {provider} is not configured")
        return None

    def start(
        self, provider: str = "google", redirect_uri: Optional[str] = None
    ) -> Result[AuthorizationRequest, ServiceError]:
        problem = self._check_provider(provider)
        if problem is not None:
            return Failure(error=problem)
        if not self.credentials.enabled:
            return Failure(error=AuthDisabledError())
        try:
            callback_uri = self._validate_redirect_uri(redirect_uri or self.settings.oauth_redirect_uri)
        except ValueError as exc:
            return Failure(error=ValidationError(str(exc), detail={"field": "redirect_uri"}))

        pair = pkce.generate_pair()
        state = pkce.generate_state()
        nonce = pkce.generate_nonce()
        self.transactions.put(
            OAuthTransaction(
                state=state,
                provider=provider,
                verifier=pair.verifier,
                redirect_uri=callback_uri,
                nonce=nonce,
                created_at=self._now(),
            )
        )
        client_id, _ = self._get_oauth_credentials(provider)
        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": callback_uri,
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
            "nonce": nonce,
            "code_challenge": pair.challenge,
            "code_challenge_method": pair.method,
        }
        if provider == "google":
            params["access_type"] = "offline"
            params["prompt"] = "consent"
        logger.info("oauth_flow_state", provider=provider, state=OAuthFlowState.STARTED.value)
        return Success(
            value=AuthorizationRequest(
                provider=provider,
                authorization_url=f"{provider_config['auth_url']}?{urlencode(params)}",
                state=state,
            )
        )

    async def callback(
        self,
        code: Optional[str],
        state: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[LoginResult, ServiceError]:
        # Consume first: a replay of this state fails even while this call is in flight
        txn = self.transactions.pop(state) if state else None
        if txn is None:
            logger.warning("oauth_callback_invalid_state")
            return Failure(error=InvalidStateError())
        flow = OAuthFlow(txn.provider)
        flow.advance(OAuthFlowState.CALLBACK_RECEIVED)
        if not code:
            flow.advance(OAuthFlowState.FAILED, reason="missing_code")
            return Failure(error=ExchangeFailedError("missing_code"))
        try:
            tokens = await self.exchange_code(txn, code)
            if tokens.id_token:
                returned_nonce = _id_token_nonce(tokens.id_token)
                if returned_nonce is not None and returned_nonce != txn.nonce:
                    raise ExchangeFailedError("nonce_mismatch")
            flow.advance(OAuthFlowState.EXCHANGED)
            profile = await self.fetch_profile(txn.provider, tokens.access_token)
            flow.advance(OAuthFlowState.PROFILE_FETCHED, provider_user_id=profile.provider_user_id)
        except OAuthError as exc:
            flow.advance(OAuthFlowState.FAILED, reason=exc.reason)
            return Failure(error=exc)

        result = self.credentials.find_or_create_from_oauth(
            profile, tokens, ip_address=ip_address, user_agent=user_agent
        )
        if isinstance(result, Failure):
            flow.advance(OAuthFlowState.FAILED, reason=result.error.error_code)
            return result
        flow.advance(OAuthFlowState.LINKED, user_id=result.value.user.id)
        return result

    async def exchange_code(self, txn: OAuthTransaction, code: str) -> ProviderTokens:
        client_id, client_secret = self._get_oauth_credentials(txn.provider)
        provider_config = OAUTH_PROVIDERS[txn.provider]
        token_data = {
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "code_verifier": txn.verifier,
            "grant_type": "authorization_code",
            "redirect_uri": txn.redirect_uri,
        }
        data = await self._post_token(txn.provider, provider_config["token_url"], token_data)
        tokens = ProviderTokens.from_response(data)
        if not tokens.access_token:
            logger.error("oauth_no_access_token", provider=txn.provider)
            raise ExchangeFailedError("no_access_token")
        return tokens

    async def _post_token(self, provider: str, url: str, form: dict) -> dict:
        try:
            async with self._client() as client:
                response = await client.post(
                    url, data=form, headers={"Accept": "application/json"}
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
                error=exc.response.text[:200],
            )
            raise ExchangeFailedError("provider_rejected") from exc
        except httpx.HTTPError as exc:
            logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            raise ExchangeFailedError("network") from exc
        except ValueError as exc:
            logger.error("oauth_token_parse_error", provider=provider, error=str(exc))
            raise ExchangeFailedError("unparseable_response") from exc
        if not isinstance(data, dict) or data.get("error"):
            logger.error(
                "oauth_token_error_response",
                provider=provider,
                provider_error=data.get("error") if isinstance(data, dict) else None,
            )
            raise ExchangeFailedError("provider_error")
        return data

    async def fetch_profile(self, provider: str, access_token: str) -> ProviderProfile:
        try:
            async with self._client() as client:
                response = await client.get(
                    OAUTH_PROVIDERS[provider]["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                response.raise_for_status()
                userinfo = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_userinfo_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            raise ProfileFetchFailedError("provider_rejected") from exc
        except httpx.HTTPError as exc:
            logger.error("oauth_userinfo_error", provider=provider, error=str(exc))
            raise ProfileFetchFailedError("network") from exc
        except ValueError as exc:
            logger.error("oauth_userinfo_parse_error", provider=provider, error=str(exc))
            raise ProfileFetchFailedError("unparseable_response") from exc
        if not isinstance(userinfo, dict):
            logger.error("oauth_userinfo_invalid_format", provider=provider, type=str(type(userinfo)))
            raise ProfileFetchFailedError("invalid_format")
        profile = _parse_userinfo(provider, userinfo)
        if not profile.provider_user_id:
            logger.error("oauth_identity_missing_uid", provider=provider)
            raise ProfileFetchFailedError("missing_subject")
        return profile

    async def refresh(
        self, refresh_token: str, provider: str = "google"
    ) -> Result[ProviderTokens, ServiceError]:
        """Trade a provider refresh token for new provider tokens."""
        problem = self._check_provider(provider)
        if problem is not None:
            return Failure(error=problem)
        client_id, client_secret = self._get_oauth_credentials(provider)
        form = {
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            data = await self._post_token(provider, OAUTH_PROVIDERS[provider]["token_url"], form)
        except ExchangeFailedError as exc:
            return Failure(error=exc)
        tokens = ProviderTokens.from_response(data)
        if not tokens.access_token:
            return Failure(error=ExchangeFailedError("no_access_token"))
        return Success(value=tokens)

    async def revoke(self, token: Optional[str], provider: str = "google") -> bool:
        """Ask the provider to revoke ``token``. Failures are logged, not raised."""
        if not token or provider not in OAUTH_PROVIDERS:
            return False
        try:
            async with self._client() as client:
                response = await client.post(
                    OAUTH_PROVIDERS[provider]["revoke_url"],
                    data={"token": token},
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("oauth_revoke_failed", provider=provider, error=str(exc))
            return False
        logger.info("oauth_token_revoked", provider=provider)
        return True

    def sweep(self) -> int:
        """Drop transactions older than the TTL. Runs off the request path."""
        removed = self.transactions.sweep()
        if removed:
            logger.info("oauth_transactions_swept", count=removed)
        return removed
