from __future__ import annotations

import re
import unicodedata
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Passwords longer than this are rejected before they reach argon2
MAX_PASSWORD_LENGTH = 128

_ERROR_CODE_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize ``value`` after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with a stable upper-case code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if not _ERROR_CODE_PATTERN.match(value):
            raise ValueError(f"Invalid error code '{value}'")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(BaseModel):
    # Strength rules are enforced by the service so errors list every failed rule
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = _normalize_unicode(value).strip()
        return cleaned or None


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class MFAVerifyRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=16)
    type: Literal["setup", "login"] = "login"


class PasswordConfirmRequest(BaseModel):
    """Re-confirmation body for backup-code regeneration and MFA disable."""

    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class ResetPasswordRequest(BaseModel):
    """Either ``{email}`` to request a reset or ``{token, password}`` to complete one."""

    email: Optional[str] = None
    token: Optional[str] = Field(default=None, max_length=256)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _validate_email(value)

    @model_validator(mode="after")
    def _one_operation(self):
        completing = self.token is not None or self.password is not None
        if completing:
            if not self.token or self.password is None:
                raise ValueError("token and password are both required")
            if self.email is not None:
                raise ValueError("provide either email or token and password")
        elif self.email is None:
            raise ValueError("email is required")
        return self

    @property
    def is_completion(self) -> bool:
        return self.token is not None


class PasswordChangeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(
        ..., alias="currentPassword", min_length=1, max_length=MAX_PASSWORD_LENGTH
    )
    new_password: str = Field(..., alias="newPassword", max_length=MAX_PASSWORD_LENGTH)


__all__ = [
    "Envelope",
    "ErrorBody",
    "LoginRequest",
    "RegisterRequest",
    "EmailVerificationRequest",
    "MFAVerifyRequest",
    "PasswordConfirmRequest",
    "ResetPasswordRequest",
    "PasswordChangeRequest",
]
