"""Storage utilities shared between the memory and postgres account stores."""

from __future__ import annotations

import base64
import hashlib
from ipaddress import ip_address
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

from storeguard.logging import get_logger

logger = get_logger(__name__)


class MfaSecretCipher:
    """Fernet wrapper for TOTP seeds at rest.

    The Fernet key is derived from arbitrary key material with SHA-256 so
    operators can supply any sufficiently long secret string.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("MFA encryption key is required")
        try:
            self._fernet = Fernet(self.derive_key(key_material))
        except ValueError as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    @staticmethod
    def derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return None
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        """Return the plaintext seed, or None when the ciphertext is unreadable."""
        if not token:
            return None
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            # Rotated key or corrupted row; treat as no secret
            logger.warning("mfa_secret_decrypt_failed")
            return None


def normalize_ip_address(raw_ip: Any) -> Optional[str]:
    """Return a canonical IP string, or None for blank/unparseable input."""
    if raw_ip is None:
        return None
    stripped = str(raw_ip).strip()
    if not stripped:
        return None
    try:
        return str(ip_address(stripped))
    except ValueError:
        return None


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Extract a column from a dict row, tolerating missing keys."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default
