"""PKCE verifier/challenge generation and constant-time verification."""

import hashlib
import base64
import re

import pytest

from warden.service import pkce
from warden.service.errors import InvalidLengthError, ValidationError

_URL_SAFE = re.compile(r"^[A-Za-z0-9_-]+$")


@pytest.mark.parametrize("length", [43, 64, 100, 128])
def test_verifier_has_requested_length_and_alphabet(length):
    verifier = pkce.generate_verifier(length)
    assert len(verifier) == length
    assert _URL_SAFE.match(verifier)
    assert "=" not in verifier


@pytest.mark.parametrize("length", [0, 42, 129, 512])
def test_verifier_length_out_of_range(length):
    with pytest.raises(InvalidLengthError):
        pkce.generate_verifier(length)


def test_invalid_length_is_a_validation_error():
    assert issubclass(InvalidLengthError, ValidationError)


def test_challenge_is_base64url_sha256_without_padding():
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).rstrip(b"=").decode()
    assert pkce.generate_challenge(verifier) == expected
    # RFC 7636 appendix B
    assert expected == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_pair_round_trip():
    pair = pkce.generate_pair()
    assert pair.method == "S256"
    assert len(pair.verifier) == pkce.DEFAULT_VERIFIER_LENGTH
    assert pkce.verify(pair.verifier, pair.challenge) is True


def test_verify_rejects_other_verifier():
    pair = pkce.generate_pair()
    other = pkce.generate_verifier()
    assert pkce.verify(other, pair.challenge) is False


@pytest.mark.parametrize(
    "challenge",
    ["", "short", "x" * 200, "é" * 43],
)
def test_verify_mismatched_challenge_returns_false(challenge):
    verifier = pkce.generate_verifier()
    assert pkce.verify(verifier, challenge) is False


def test_verify_never_raises_on_bad_types():
    assert pkce.verify(None, "abc") is False
    assert pkce.verify("abc", None) is False
    assert pkce.verify("vérifier" * 8, "abc") is False


def test_state_and_nonce_are_independent_256_bit_hex():
    state = pkce.generate_state()
    nonce = pkce.generate_nonce()
    assert len(state) == 64 and len(nonce) == 64
    int(state, 16)
    int(nonce, 16)
    assert state != nonce
