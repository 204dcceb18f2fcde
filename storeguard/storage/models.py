from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Role(str, Enum):
    CUSTOMER = "CUSTOMER"
    STAFF = "STAFF"
    STORE_ADMIN = "STORE_ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"
    DELETED = "DELETED"


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    role: Role = Role.CUSTOMER
    tenant_id: Optional[str] = None
    status: AccountStatus = AccountStatus.ACTIVE
    name: Optional[str] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    mfa_enabled: bool = False
    # Plaintext base32 seed; stores encrypt it at rest
    mfa_secret: Optional[str] = None
    email_verified: bool = False
    verification_token: Optional[str] = None
    verification_expires: Optional[datetime] = None
    reset_token: Optional[str] = None
    reset_expires: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        # Unknown role/status strings raise ValueError here
        self.role = Role(self.role)
        self.status = AccountStatus(self.status)
        self.email = normalize_email(self.email)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None or self.status == AccountStatus.DELETED

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def public_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role.value,
            "storeId": self.tenant_id,
            "status": self.status.value,
            "emailVerified": self.email_verified,
            "mfaEnabled": self.mfa_enabled,
        }


@dataclass
class PasswordHistoryEntry:
    account_id: str
    hashed_password: str
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class BackupCode:
    account_id: str
    hashed_code: str
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def is_usable(self, now: datetime) -> bool:
        return not self.used and self.expires_at > now


@dataclass
class Session:
    id: str
    account_id: str
    email: str
    role: Role
    tenant_id: Optional[str]
    mfa_verified: bool
    created_at: datetime
    expires_at: datetime
    last_accessed_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def __post_init__(self) -> None:
        self.role = Role(self.role)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "email": self.email,
            "role": self.role.value,
            "tenant_id": self.tenant_id,
            "mfa_verified": self.mfa_verified,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "last_accessed_at": self.last_accessed_at.isoformat(),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            account_id=data["account_id"],
            email=data["email"],
            role=Role(data["role"]),
            tenant_id=data.get("tenant_id"),
            mfa_verified=bool(data.get("mfa_verified", False)),
            created_at=_parse_dt(data["created_at"]),
            expires_at=_parse_dt(data["expires_at"]),
            last_accessed_at=_parse_dt(data["last_accessed_at"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
        )

    def public_view(self) -> Dict[str, Any]:
        # The full id is the bearer secret; only a display prefix leaves the server
        return {
            "id": self.id[:8],
            "mfaVerified": self.mfa_verified,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "lastAccessedAt": self.last_accessed_at.isoformat(),
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
        }
