from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from fastapi import Depends, Header, Request, WebSocket

from warden.api.error_handling import _http_error
from warden.config import AuthMode
from warden.logging import get_logger
from warden.service.errors import InvalidTokenError
from warden.service.runtime import Runtime, get_runtime
from warden.service.sessions import SessionRegistry
from warden.storage.models import Role

logger = get_logger(__name__)

# Close code sent before the handshake completes when a socket is refused
WS_UNAUTHORIZED = 4401


@dataclass(frozen=True)
class Identity:
    """Minimal identity attached to a request or socket."""

    id: str
    username: str
    role: Role

    def to_dict(self) -> dict:
        return {"id": self.id, "username": self.username, "role": self.role.value}


@dataclass(frozen=True)
class GateDecision:
    identity: Optional[Identity]
    token: Optional[str]
    rejected: bool = False


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class AuthGate:
    """Token extraction and mode policy shared by HTTP and socket transports.

    Priority is cookie, then ``Authorization: Bearer``, then (sockets only,
    when enabled) the ``token`` query parameter.
    """

    def __init__(
        self,
        sessions: SessionRegistry,
        mode: AuthMode,
        *,
        cookie_name: str = "auth_token",
        allow_query_token: bool = True,
    ) -> None:
        self.sessions = sessions
        self.mode = mode
        self.cookie_name = cookie_name
        self.allow_query_token = allow_query_token

    @classmethod
    def from_runtime(cls, runtime: Runtime) -> "AuthGate":
        return cls(
            runtime.sessions,
            runtime.settings.auth_mode,
            cookie_name=runtime.settings.cookie_name,
            allow_query_token=runtime.settings.allow_socket_query_token,
        )

    @property
    def disabled(self) -> bool:
        return self.mode is AuthMode.DISABLED

    def extract_http_token(
        self, cookies: Mapping[str, str], authorization: Optional[str]
    ) -> Optional[str]:
        return cookies.get(self.cookie_name) or _extract_bearer(authorization)

    def extract_socket_token(
        self,
        cookies: Mapping[str, str],
        authorization: Optional[str],
        query_params: Mapping[str, str],
    ) -> Optional[str]:
        token = self.extract_http_token(cookies, authorization)
        if token:
            return token
        if self.allow_query_token:
            return query_params.get("token") or None
        return None

    def resolve(self, token: Optional[str]) -> GateDecision:
        if self.disabled:
            return GateDecision(identity=None, token=None)
        claims = self.sessions.verify(token) if token else None
        if claims is None:
            rejected = self.mode is AuthMode.REQUIRED
            if token and rejected:
                logger.info("auth_gate_rejected", reason="invalid_token")
            return GateDecision(identity=None, token=None, rejected=rejected)
        identity = Identity(id=claims.subject, username=claims.username, role=claims.role)
        return GateDecision(identity=identity, token=token)


def get_gate() -> AuthGate:
    return AuthGate.from_runtime(get_runtime())


async def authenticate_request(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Optional[Identity]:
    """Verify the presented token per auth mode and attach the identity to the request."""
    gate = get_gate()
    token = gate.extract_http_token(request.cookies, authorization)
    decision = gate.resolve(token)
    request.state.identity = decision.identity
    request.state.auth_token = decision.token
    if decision.rejected:
        if token:
            raise InvalidTokenError()
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return decision.identity


async def require_auth(
    identity: Optional[Identity] = Depends(authenticate_request),
) -> Optional[Identity]:
    """Reject anonymous callers. A no-op while auth is disabled."""
    if get_runtime().settings.auth_mode is AuthMode.DISABLED:
        return identity
    if identity is None:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return identity


def require_role(*roles: Role) -> Callable:
    """Dependency factory admitting only the given roles. A no-op while auth is disabled."""
    allowed = {Role(role) for role in roles}

    async def _dependency(
        identity: Optional[Identity] = Depends(authenticate_request),
    ) -> Optional[Identity]:
        if get_runtime().settings.auth_mode is AuthMode.DISABLED:
            return identity
        if identity is None:
            raise _http_error("unauthorized", "authentication required", status_code=401)
        if identity.role not in allowed:
            raise _http_error(
                "forbidden",
                "insufficient role",
                status_code=403,
                details={"required": sorted(role.value for role in allowed)},
            )
        return identity

    return _dependency


async def authenticate_websocket(ws: WebSocket) -> Optional[GateDecision]:
    """Run the gate on a socket before accepting it.

    Returns None after closing the socket when required-mode auth fails; the
    handshake is never completed for a rejected caller.
    """
    gate = get_gate()
    token = gate.extract_socket_token(
        ws.cookies, ws.headers.get("authorization"), ws.query_params
    )
    decision = gate.resolve(token)
    if decision.rejected:
        logger.info("socket_rejected", client=ws.client.host if ws.client else None)
        await ws.close(code=WS_UNAUTHORIZED)
        return None
    ws.state.identity = decision.identity
    ws.state.auth_token = decision.token
    return decision
