from __future__ import annotations

from typing import Any, Optional
from urllib.parse import urlencode

from fastapi import (
    APIRouter,
    Depends,
    Header,
    Path,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.responses import RedirectResponse

from warden.api.error_handling import _http_error
from warden.api.gate import (
    Identity,
    authenticate_websocket,
    get_gate,
    require_auth,
    require_role,
)
from warden.api.schemas import (
    AuthResponse,
    AuthStatusResponse,
    ChangePasswordRequest,
    Envelope,
    LinkedProvider,
    LockoutStatusResponse,
    LoginRequest,
    MeResponse,
    ProviderInfo,
    RegisterRequest,
    SessionResponse,
    UserResponse,
)
from warden.config import Settings
from warden.logging import get_logger
from warden.service.credentials import LoginResult
from warden.service.errors import AuthDisabledError
from warden.service.results import Failure, Result
from warden.service.runtime import get_runtime
from warden.service.tokens import token_digest
from warden.storage.models import PublicUser, Role, normalize_username

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _unwrap(result: Result) -> Any:
    if isinstance(result, Failure):
        raise result.error
    return result.value


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_payload(user: PublicUser) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        role=user.role.value,
        created_at=user.created_at,
    )


def _auth_payload(login: LoginResult) -> AuthResponse:
    return AuthResponse(
        user=_user_payload(login.user),
        token=login.token,
        session_id=login.session_id,
        expires_at=login.expires_at,
    )


def _set_session_cookie(response: Response, settings: Settings, token: str) -> None:
    response.set_cookie(value=token, **settings.cookie_options())


def _clear_session_cookie(response: Response, settings: Settings) -> None:
    opts = settings.cookie_options()
    response.delete_cookie(
        opts["key"],
        path=opts["path"],
        secure=opts["secure"],
        httponly=opts["httponly"],
        samesite=opts["samesite"],
    )


def _require_identity(identity: Optional[Identity]) -> Identity:
    # require_auth passes None through only when auth is disabled
    if identity is None:
        raise AuthDisabledError()
    return identity


@router.get("/auth/status", response_model=Envelope, tags=["auth"])
async def auth_status(request: Request, authorization: Optional[str] = Header(None)):
    """Report the auth mode and, when a valid token is presented, the current user."""
    runtime = get_runtime()
    gate = get_gate()
    user = None
    if not gate.disabled:
        token = gate.extract_http_token(request.cookies, authorization)
        if token:
            user = runtime.credentials.verify_and_get_user(token)
    return Envelope(
        status="ok",
        data=AuthStatusResponse(
            enabled=not gate.disabled,
            mode=runtime.settings.auth_mode.value,
            user=_user_payload(user) if user else None,
        ),
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a player account and sign it in.

    The account is returned even when the follow-up sign-in fails; the
    cookie and token are only present when it succeeded.

    Raises:
        400: Username shorter than 3 or password shorter than 8 characters
        409: Username already taken (case-insensitive)
    """
    runtime = get_runtime()
    user = _unwrap(
        await runtime.credentials.register(body.username, body.password, email=body.email)
    )
    login = await runtime.credentials.login(
        body.username,
        body.password,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    if isinstance(login, Failure):
        logger.warning(
            "register_auto_login_failed",
            user_id=user.id,
            error_code=login.error.error_code,
        )
        return Envelope(status="ok", data=AuthResponse(user=_user_payload(user)))
    _set_session_cookie(response, runtime.settings, login.value.token)
    return Envelope(status="ok", data=_auth_payload(login.value))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with username and password.

    Raises:
        401: Unknown user or wrong password (indistinguishable)
        429: Identifier locked out; ``details.remaining_minutes`` says for how long
    """
    runtime = get_runtime()
    result = _unwrap(
        await runtime.credentials.login(
            body.username,
            body.password,
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    )
    _set_session_cookie(response, runtime.settings, result.token)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request, response: Response, authorization: Optional[str] = Header(None)
):
    runtime = get_runtime()
    token = get_gate().extract_http_token(request.cookies, authorization)
    revoked = runtime.credentials.logout(token)
    _clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    identity: Optional[Identity] = Depends(require_auth),
):
    """Change the caller's password; every session of the user is revoked."""
    principal = _require_identity(identity)
    runtime = get_runtime()
    revoked = _unwrap(
        await runtime.credentials.change_password(
            principal.id, body.current_password, body.new_password
        )
    )
    _clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"sessions_revoked": revoked})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(identity: Optional[Identity] = Depends(require_auth)):
    principal = _require_identity(identity)
    runtime = get_runtime()
    user = runtime.credentials.get_user_by_id(principal.id)
    if user is None:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    providers = [LinkedProvider(**p) for p in runtime.credentials.linked_providers(user.id)]
    return Envelope(status="ok", data=MeResponse(user=_user_payload(user), providers=providers))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(request: Request, identity: Optional[Identity] = Depends(require_auth)):
    """Active sessions of the caller, newest first."""
    principal = _require_identity(identity)
    runtime = get_runtime()
    current_token = getattr(request.state, "auth_token", None)
    current_hash = token_digest(current_token) if current_token else None
    sessions = [
        SessionResponse(
            id=sess.id,
            created_at=sess.created_at,
            expires_at=sess.expires_at,
            last_used_at=sess.last_used_at,
            ip_address=sess.ip_address,
            user_agent=sess.user_agent,
            current=sess.token_hash == current_hash,
        )
        for sess in runtime.sessions.active_sessions(principal.id)
    ]
    return Envelope(status="ok", data={"items": sessions})


@router.get("/auth/providers", response_model=Envelope, tags=["auth"])
async def list_providers():
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data={"items": [ProviderInfo(**p) for p in runtime.oauth.providers()]},
    )


@router.delete("/auth/providers/{provider}", response_model=Envelope, tags=["auth"])
async def unlink_provider(
    provider: str = Path(..., max_length=32),
    identity: Optional[Identity] = Depends(require_auth),
):
    """Unlink a provider and ask it to revoke the stored token."""
    principal = _require_identity(identity)
    runtime = get_runtime()
    link = _unwrap(runtime.credentials.unlink_provider(principal.id, provider))
    provider_revoked = await runtime.oauth.revoke(
        link.refresh_token or link.access_token, provider
    )
    return Envelope(
        status="ok",
        data={"provider": provider, "unlinked": True, "provider_revoked": provider_revoked},
    )


@router.get("/auth/google", tags=["auth"])
async def google_start():
    """Redirect to the provider's consent screen with a fresh PKCE transaction."""
    runtime = get_runtime()
    request_info = _unwrap(runtime.oauth.start("google"))
    return RedirectResponse(request_info.authorization_url, status_code=302)


def _failure_redirect(settings: Settings, code: str) -> RedirectResponse:
    target = settings.oauth_failure_redirect
    separator = "&" if "?" in target else "?"
    return RedirectResponse(f"{target}{separator}{urlencode({'error': code})}", status_code=302)


@router.get("/auth/google/callback", tags=["auth"])
async def google_callback(
    request: Request,
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=256),
    error: Optional[str] = Query(None, max_length=256),
):
    runtime = get_runtime()
    if error:
        # The user declined or the provider refused; burn the state all the same
        if state:
            runtime.oauth.transactions.pop(state)
        logger.warning("oauth_provider_denied", provider="google", provider_error=error)
        return _failure_redirect(runtime.settings, "oauth_failed")
    result = await runtime.oauth.callback(
        code,
        state,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    if isinstance(result, Failure):
        return _failure_redirect(runtime.settings, result.error.error_code)
    response = RedirectResponse(runtime.settings.oauth_success_redirect, status_code=302)
    _set_session_cookie(response, runtime.settings, result.value.token)
    return response


@router.get("/admin/lockouts/{identifier}", response_model=Envelope, tags=["admin"])
async def lockout_status(
    identifier: str = Path(..., max_length=64),
    _: Optional[Identity] = Depends(require_role(Role.ADMIN)),
):
    runtime = get_runtime()
    key = normalize_username(identifier)
    status = runtime.lockout.status(key)
    return Envelope(
        status="ok", data=LockoutStatusResponse(identifier=key, **status.to_dict())
    )


@router.delete("/admin/lockouts/{identifier}", response_model=Envelope, tags=["admin"])
async def clear_lockout(
    identifier: str = Path(..., max_length=64),
    admin: Optional[Identity] = Depends(require_role(Role.ADMIN)),
):
    runtime = get_runtime()
    key = normalize_username(identifier)
    removed = runtime.lockout.clear_lockout(key)
    logger.info(
        "admin_lockout_cleared",
        identifier=key,
        admin_id=admin.id if admin else None,
    )
    return Envelope(status="ok", data={"identifier": key, "attempts_removed": removed})


@router.websocket("/ws/session")
async def session_socket(ws: WebSocket):
    """Authenticated session channel.

    The gate runs before the handshake. Clients may send ``{"type": "ping"}``
    or ``{"type": "logout"}``; logout revokes the token this connection
    presented.
    """
    decision = await authenticate_websocket(ws)
    if decision is None:
        return
    runtime = get_runtime()
    await ws.accept()
    await ws.send_json(
        {
            "type": "hello",
            "mode": runtime.settings.auth_mode.value,
            "identity": decision.identity.to_dict() if decision.identity else None,
        }
    )
    try:
        while True:
            try:
                message = await ws.receive_json()
            except ValueError:
                await ws.send_json(
                    {"type": "error", "code": "validation_error", "message": "invalid JSON"}
                )
                continue
            kind = message.get("type") if isinstance(message, dict) else None
            if kind == "ping":
                await ws.send_json({"type": "pong"})
            elif kind == "logout":
                token = getattr(ws.state, "auth_token", None)
                revoked = runtime.credentials.logout(token) if token else False
                await ws.send_json({"type": "logged_out", "revoked": revoked})
                await ws.close(code=1000)
                return
            else:
                await ws.send_json(
                    {"type": "error", "code": "validation_error", "message": "unknown message type"}
                )
    except WebSocketDisconnect:
        logger.info(
            "session_socket_closed",
            user_id=decision.identity.id if decision.identity else None,
        )
