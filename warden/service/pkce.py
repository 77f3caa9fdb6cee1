"""PKCE (RFC 7636) verifier/challenge helpers and OAuth state/nonce values."""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass

from warden.service.errors import InvalidLengthError

MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128
DEFAULT_VERIFIER_LENGTH = 64
CHALLENGE_METHOD = "S256"


@dataclass(frozen=True)
class PKCEPair:
    verifier: str
    challenge: str
    method: str = CHALLENGE_METHOD


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_verifier(length: int = DEFAULT_VERIFIER_LENGTH) -> str:
    """Return a random URL-safe verifier of exactly ``length`` characters."""
    if not isinstance(length, int) or not MIN_VERIFIER_LENGTH <= length <= MAX_VERIFIER_LENGTH:
        raise InvalidLengthError(
            f"verifier length must be between {MIN_VERIFIER_LENGTH} and {MAX_VERIFIER_LENGTH}",
            detail={"length": length},
        )
    # 3 random bytes encode to 4 characters
    raw = secrets.token_bytes((length * 3) // 4 + 3)
    return _b64url(raw)[:length]


def generate_challenge(verifier: str) -> str:
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_pair(length: int = DEFAULT_VERIFIER_LENGTH) -> PKCEPair:
    verifier = generate_verifier(length)
    return PKCEPair(verifier=verifier, challenge=generate_challenge(verifier))


def verify(verifier: str, challenge: str) -> bool:
    """Constant-time check that ``challenge`` is the S256 challenge of ``verifier``.

    Returns False instead of raising for mismatched lengths, non-ASCII input
    or non-string arguments.
    """
    if not isinstance(verifier, str) or not isinstance(challenge, str):
        return False
    try:
        expected = generate_challenge(verifier).encode("ascii")
        presented = challenge.encode("ascii")
    except UnicodeEncodeError:
        return False
    if len(expected) != len(presented):
        return False
    return hmac.compare_digest(expected, presented)


def generate_state() -> str:
    """256-bit random hex value binding the callback to its authorization request."""
    return secrets.token_hex(32)


def generate_nonce() -> str:
    """256-bit random hex value echoed in the ID token to block replay."""
    return secrets.token_hex(32)
