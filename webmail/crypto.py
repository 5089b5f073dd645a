"""
Encrypt / decrypt stored mail passwords using Fernet (AES128 + HMAC).

Accepts ``security.encryption_key`` (a Fernet key) or derives one from any
other secret string.
"""

import base64
import hashlib
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from webmail.config import SecurityConfig

logger = logging.getLogger(__name__)

_DEV_SECRET = "insecure-dev-secret-do-not-use-in-production"


def _derive_fernet_key_from_secret(secret: str) -> bytes:
    # 32 raw bytes from SHA-256, then urlsafe base64 encode -> valid Fernet key
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def _resolve_key(config: Optional[SecurityConfig]) -> bytes:
    """
    Return a valid Fernet key.

    Priority:
      1) security.encryption_key (used as-is when it already is a Fernet key)
      2) derived from security.session_secret
      3) derived from a development secret
    """
    cfg_key = config.encryption_key if config else ""
    if cfg_key:
        raw = cfg_key.encode("utf-8")
        try:
            Fernet(raw)
            return raw
        except ValueError:
            return _derive_fernet_key_from_secret(cfg_key)

    if config and config.session_secret:
        return _derive_fernet_key_from_secret(config.session_secret)
    return _derive_fernet_key_from_secret(_DEV_SECRET)


class SecretBox:
    """Opaque encrypt/decrypt service for credentials at rest."""

    def __init__(self, config: Optional[SecurityConfig] = None):
        self._fernet = Fernet(_resolve_key(config))

    def encrypt(self, value: str) -> str:
        if not value:
            return ""
        return self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str) -> str:
        """Decrypt a stored secret.

        Raises:
            InvalidToken: If the token was produced with a different key or
                has been tampered with.
        """
        if not token:
            return ""
        return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")


__all__ = ["SecretBox", "InvalidToken"]
