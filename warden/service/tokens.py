from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta
from typing import Any, Optional

from warden.logging import get_logger
from warden.storage.models import Role

logger = get_logger(__name__)


class SigningUnavailable(RuntimeError):
    """Raised when a token is requested but no usable signing secret is configured."""


class TokenSigner:
    """HS256 JWT signing and verification.

    A signer built without a usable secret refuses to sign and rejects every
    token, so a misconfigured lenient deployment fails closed.
    """

    def __init__(
        self,
        secret: Optional[str],
        *,
        issuer: str,
        audience: str,
        ttl_minutes: int,
        leeway: timedelta = timedelta(seconds=0),
    ) -> None:
        self._secret = secret.encode() if secret else None
        self.issuer = issuer
        self.audience = audience
        self.ttl = timedelta(minutes=ttl_minutes)
        self._leeway = leeway

    @property
    def configured(self) -> bool:
        return self._secret is not None

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).rstrip(b"=").decode()

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * (-len(segment) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(
        self,
        *,
        subject: str,
        username: str,
        role: Role,
        session_id: str,
        now: datetime,
    ) -> tuple[str, datetime]:
        """Return the signed token and its expiry."""
        if self._secret is None:
            raise SigningUnavailable("token signing secret is not configured")
        expires_at = now + self.ttl
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "username": username,
            "role": Role(role).value,
            "sid": session_id,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}", expires_at

    def decode(self, token: str, *, now: datetime) -> Optional[dict[str, Any]]:
        """Return the claims of a well-signed, unexpired token for this issuer/audience."""
        if self._secret is None or not isinstance(token, str) or not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to block algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(signing_input), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= now.timestamp() - self._leeway.total_seconds():
            return None
        if not payload.get("sub") or not payload.get("sid"):
            return None
        try:
            Role(payload.get("role"))
        except ValueError:
            return None
        return payload


def token_digest(token: str) -> str:
    """SHA-256 hex digest of the full token string; the only form persisted."""
    return hashlib.sha256(token.encode()).hexdigest()
