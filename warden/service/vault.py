from __future__ import annotations

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from warden.logging import get_logger

logger = get_logger(__name__)


class TokenVault:
    """Fernet encryption for provider access/refresh tokens stored on OAuth links."""

    def __init__(self, key_material: Optional[str]) -> None:
        self._cipher = Fernet(self._derive_cipher_key(key_material)) if key_material else None

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    @property
    def available(self) -> bool:
        return self._cipher is not None

    def encrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        if not self._cipher:
            # Without key material the provider token is not kept at all
            return None
        return self._cipher.encrypt(value.encode()).decode()

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        if not value or not self._cipher:
            return None
        try:
            return self._cipher.decrypt(value.encode()).decode()
        except InvalidToken:
            logger.warning("provider_token_decrypt_failed")
            return None
