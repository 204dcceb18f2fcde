from __future__ import annotations

import re
import secrets
import string
from typing import Any, Dict, List, Optional, Protocol

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from storeguard.logging import get_logger
from storeguard.service.errors import ValidationError
from storeguard.storage.models import PasswordHistoryEntry

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

_SYMBOL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?`~]")
_CLASS_CHECKS = (
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
    (re.compile(r"[0-9]"), "Password must contain at least one number"),
    (_SYMBOL_RE, "Password must contain at least one special character"),
)


def check_password_strength(password: str) -> Dict[str, Any]:
    """Score a candidate password.

    Returns ``{"valid", "errors", "strength", "score"}``. A password is valid
    when it is 8-128 characters long and has at least one upper-case letter,
    lower-case letter, digit and symbol. Length past 12 and 16 characters
    earns extra points toward the strength label.
    """
    password = password or ""
    errors: List[str] = []
    score = 0

    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    else:
        score += 1
    if len(password) > MAX_PASSWORD_LENGTH:
        errors.append(f"Password must be at most {MAX_PASSWORD_LENGTH} characters")
    if len(password) >= 12:
        score += 1
    if len(password) >= 16:
        score += 1

    for pattern, message in _CLASS_CHECKS:
        if pattern.search(password):
            score += 1
        else:
            errors.append(message)

    if score >= 7:
        strength = "very-strong"
    elif score >= 5:
        strength = "strong"
    elif score >= 4:
        strength = "medium"
    else:
        strength = "weak"
    return {"valid": not errors, "errors": errors, "strength": strength, "score": score}


def validate_password_strength(password: str, *, field: str = "password") -> None:
    result = check_password_strength(password)
    if not result["valid"]:
        raise ValidationError(
            "Password does not meet requirements",
            detail={"fields": {field: result["errors"]}},
        )


def generate_strong_password(length: int = 16) -> str:
    """Random password guaranteed to pass :func:`validate_password_strength`."""
    length = max(length, MIN_PASSWORD_LENGTH)
    symbols = "!@#$%^&*()-_=+"
    pools = [string.ascii_uppercase, string.ascii_lowercase, string.digits, symbols]
    chars = [secrets.choice(pool) for pool in pools]
    alphabet = "".join(pools)
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


class PasswordHasher:
    """argon2id hashing with fixed, configurable cost parameters."""

    def __init__(
        self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4
    ) -> None:
        self._hasher = _Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None

    @classmethod
    def from_settings(cls, settings) -> "PasswordHasher":
        return cls(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, hashed: str) -> bool:
        if not hashed:
            return False
        try:
            return self._hasher.verify(hashed, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_invalid")
            return False

    def needs_rehash(self, hashed: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(hashed)
        except InvalidHash:
            return True

    def dummy_verify(self, password: str) -> bool:
        """Burn one verification so unknown accounts cost the same as real ones."""
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(24))
        self.verify(password, self._dummy_hash)
        return False


class PasswordHistoryStore(Protocol):
    def add_password_history(
        self, account_id: str, hashed_password: str, *, retain: int, now=None
    ) -> PasswordHistoryEntry: ...

    def list_password_history(
        self, account_id: str, limit: int
    ) -> List[PasswordHistoryEntry]: ...


class PasswordHistoryGuard:
    """Rejects reuse of an account's recent passwords."""

    def __init__(
        self,
        store: PasswordHistoryStore,
        hasher: PasswordHasher,
        *,
        reuse_window: int = 5,
        retention: int = 10,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.reuse_window = reuse_window
        self.retention = max(retention, reuse_window)

    def was_recently_used(
        self, account_id: str, password: str, window: Optional[int] = None
    ) -> bool:
        entries = self.store.list_password_history(account_id, window or self.reuse_window)
        for entry in entries:
            if self.hasher.verify(password, entry.hashed_password):
                return True
        return False

    def record(self, account_id: str, hashed_password: str, *, now=None) -> PasswordHistoryEntry:
        return self.store.add_password_history(
            account_id, hashed_password, retain=self.retention, now=now
        )


__all__ = [
    "PasswordHasher",
    "PasswordHistoryGuard",
    "check_password_strength",
    "validate_password_strength",
    "generate_strong_password",
]
