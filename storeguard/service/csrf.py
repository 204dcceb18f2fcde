from __future__ import annotations

import hashlib
import hmac
import secrets
import time
from typing import Callable, Mapping, Optional

from storeguard.logging import get_logger

logger = get_logger(__name__)

CSRF_HEADER_NAME = "x-csrf-token"
CSRF_FORM_FIELD = "csrf_token"
_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def _now_ms() -> int:
    return int(time.time() * 1000)


class CsrfTokenService:
    """Stateless double-submit CSRF tokens of the form ``value:issuedAt:signature``.

    ``issuedAt`` is epoch milliseconds and the signature is an HMAC-SHA256
    over ``value:issuedAt``; nothing is stored server-side.
    """

    def __init__(
        self,
        secret: str,
        *,
        ttl_seconds: int = 24 * 3600,
        clock_ms: Callable[[], int] = _now_ms,
    ) -> None:
        if not secret:
            raise ValueError("CSRF secret is required")
        self._secret = secret.encode()
        self.ttl_seconds = ttl_seconds
        self.clock_ms = clock_ms

    def _sign(self, value: str, issued_at: str) -> str:
        return hmac.new(self._secret, f"{value}:{issued_at}".encode(), hashlib.sha256).hexdigest()

    def issue(self) -> str:
        value = secrets.token_hex(32)
        issued_at = str(self.clock_ms())
        return f"{value}:{issued_at}:{self._sign(value, issued_at)}"

    def verify(self, cookie_token: Optional[str], submitted_token: Optional[str]) -> bool:
        if not cookie_token or not submitted_token:
            return False
        if not hmac.compare_digest(cookie_token.encode(), submitted_token.encode()):
            return False
        parts = cookie_token.split(":")
        if len(parts) != 3:
            return False
        value, issued_at, signature = parts
        if not value or not issued_at.isdigit():
            return False
        if not hmac.compare_digest(self._sign(value, issued_at).encode(), signature.encode()):
            logger.warning("csrf_signature_invalid")
            return False
        age_ms = self.clock_ms() - int(issued_at)
        return 0 <= age_ms <= self.ttl_seconds * 1000

    @staticmethod
    def requires_protection(method: str) -> bool:
        return (method or "").upper() not in _SAFE_METHODS

    @staticmethod
    def extract(
        headers: Mapping[str, str], form: Optional[Mapping[str, str]] = None
    ) -> Optional[str]:
        token = headers.get(CSRF_HEADER_NAME)
        if token:
            return token
        if form is not None:
            value = form.get(CSRF_FORM_FIELD)
            return value if isinstance(value, str) and value else None
        return None


__all__ = ["CsrfTokenService", "CSRF_HEADER_NAME", "CSRF_FORM_FIELD"]
