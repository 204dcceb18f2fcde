from __future__ import annotations

import hashlib
import math
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Protocol, Tuple

from storeguard.logging import get_logger
from storeguard.service.audit import AuditAction, AuditEmitter, record_audit
from storeguard.service.errors import (
    AccountLockedError,
    AccountNotActiveError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidPasswordError,
)
from storeguard.service.notifications import NotificationDispatcher, notify
from storeguard.service.passwords import PasswordHasher
from storeguard.storage.models import (
    Account,
    AccountStatus,
    BackupCode,
    PasswordHistoryEntry,
    Role,
    normalize_email,
    utcnow,
)

logger = get_logger(__name__)


class AccountStore(Protocol):
    """Durable account state shared by the credential, MFA and reset flows.

    Methods that return ``Optional[Account]`` from a conditional update return
    None when the condition did not hold, which is how callers detect that a
    concurrent request won the race.
    """

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        role: Role | str = Role.CUSTOMER,
        tenant_id: Optional[str] = None,
        name: Optional[str] = None,
        status: AccountStatus | str = AccountStatus.ACTIVE,
        email_verified: bool = False,
        verification_token: Optional[str] = None,
        verification_expires: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def update_account_role(
        self, account_id: str, role: Role | str, tenant_id: Optional[str] = None
    ) -> Optional[Account]: ...

    def set_account_status(
        self, account_id: str, status: AccountStatus | str, *, now: Optional[datetime] = None
    ) -> Optional[Account]: ...

    def record_failed_login(
        self, account_id: str, now: datetime, max_attempts: int, lock_until: datetime
    ) -> Optional[Account]: ...

    def record_successful_login(
        self,
        account_id: str,
        now: datetime,
        ip_address: Optional[str] = None,
        *,
        clear_lockout: bool = True,
    ) -> Optional[Account]: ...

    def reset_failed_logins(self, account_id: str) -> Optional[Account]: ...

    def update_password_hash(self, account_id: str, password_hash: str) -> bool: ...

    def set_password(
        self, account_id: str, password_hash: str, now: datetime
    ) -> Optional[Account]: ...

    def add_password_history(
        self, account_id: str, hashed_password: str, *, retain: int, now: Optional[datetime] = None
    ) -> PasswordHistoryEntry: ...

    def list_password_history(
        self, account_id: str, limit: int
    ) -> List[PasswordHistoryEntry]: ...

    def set_reset_token(
        self, account_id: str, token: str, expires_at: datetime
    ) -> Optional[Account]: ...

    def get_account_by_reset_token(self, token: str) -> Optional[Account]: ...

    def consume_reset_token(
        self, token: str, password_hash: str, now: datetime
    ) -> Optional[Account]: ...

    def set_verification_token(
        self, account_id: str, token: str, expires_at: datetime
    ) -> Optional[Account]: ...

    def consume_verification_token(self, token: str, now: datetime) -> Optional[Account]: ...

    def set_mfa_secret(self, account_id: str, secret: str) -> Optional[Account]: ...

    def enable_mfa(self, account_id: str) -> Optional[Account]: ...

    def disable_mfa(self, account_id: str) -> Optional[Account]: ...

    def replace_backup_codes(
        self,
        account_id: str,
        hashed_codes: Iterable[str],
        *,
        expires_at: datetime,
        now: datetime,
    ) -> List[BackupCode]: ...

    def consume_backup_code(self, account_id: str, hashed_code: str, now: datetime) -> bool: ...

    def count_backup_codes(self, account_id: str, now: datetime) -> Tuple[int, int]: ...

    def ping(self) -> bool: ...


def email_fingerprint(email: str) -> str:
    return hashlib.sha256(normalize_email(email).encode()).hexdigest()[:16]


def minutes_until(moment: datetime, now: datetime) -> int:
    return max(1, math.ceil((moment - now).total_seconds() / 60))


class CredentialValidator:
    """Email/password verification with a progressive lockout.

    Unknown and deleted accounts are answered exactly like a wrong password,
    including the cost of one argon2 verification, so neither the response
    nor its latency reveals whether an email is registered.
    """

    def __init__(
        self,
        store: AccountStore,
        hasher: PasswordHasher,
        *,
        audit: Optional[AuditEmitter] = None,
        notifier: Optional[NotificationDispatcher] = None,
        max_attempts: int = 5,
        lockout_minutes: int = 30,
        require_email_verification: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.audit = audit
        self.notifier = notifier
        self.max_attempts = max_attempts
        self.lockout = timedelta(minutes=lockout_minutes)
        self.require_email_verification = require_email_verification
        self.clock = clock

    def validate(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account:
        normalized = normalize_email(email)
        account = self.store.get_account_by_email(normalized) if normalized else None
        if account is None or account.is_deleted:
            self.hasher.dummy_verify(password or "")
            logger.info("login_unknown_account", email_hash=email_fingerprint(normalized))
            record_audit(
                self.audit,
                AuditAction.LOGIN_FAILED,
                None,
                ip_address=ip_address,
                user_agent=user_agent,
                reason="unknown_account",
                email_hash=email_fingerprint(normalized),
            )
            raise InvalidCredentialsError()

        if account.status != AccountStatus.ACTIVE:
            record_audit(
                self.audit,
                AuditAction.LOGIN_FAILED,
                account.id,
                ip_address=ip_address,
                user_agent=user_agent,
                reason="account_not_active",
                status=account.status.value,
            )
            raise AccountNotActiveError(account.status.value)

        self.ensure_not_locked(account, ip_address=ip_address, user_agent=user_agent)

        if not self.hasher.verify(password or "", account.password_hash):
            self.record_failure(
                account, "invalid_password", ip_address=ip_address, user_agent=user_agent
            )
            raise InvalidCredentialsError()

        if self.require_email_verification and not account.email_verified:
            record_audit(
                self.audit,
                AuditAction.LOGIN_FAILED,
                account.id,
                ip_address=ip_address,
                user_agent=user_agent,
                reason="email_not_verified",
            )
            raise ForbiddenError(
                "Email address has not been verified", error_code="EMAIL_NOT_VERIFIED"
            )

        now = self.clock()
        # With MFA the counter stays armed until the second factor passes
        updated = (
            self.store.record_successful_login(
                account.id, now, ip_address, clear_lockout=not account.mfa_enabled
            )
            or account
        )
        if self.hasher.needs_rehash(account.password_hash):
            self.store.update_password_hash(account.id, self.hasher.hash(password))
            logger.info("password_rehashed", account_id=account.id)
        record_audit(
            self.audit,
            AuditAction.CREDENTIALS_VERIFIED,
            account.id,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
        )
        return updated

    def ensure_not_locked(
        self,
        account: Account,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Raise AccountLockedError while a lock is active; consumes no attempt."""
        now = self.clock()
        if account.is_locked(now):
            minutes = minutes_until(account.locked_until, now)
            logger.info("login_blocked_locked", account_id=account.id, minutes_remaining=minutes)
            record_audit(
                self.audit,
                AuditAction.LOGIN_FAILED,
                account.id,
                ip_address=ip_address,
                user_agent=user_agent,
                reason="account_locked",
            )
            raise AccountLockedError(minutes)

    def record_failure(
        self,
        account: Account,
        reason: str,
        *,
        action: AuditAction = AuditAction.LOGIN_FAILED,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account:
        """Count one failed attempt against the shared lockout counter."""
        now = self.clock()
        lock_until = now + self.lockout
        updated = self.store.record_failed_login(
            account.id, now, self.max_attempts, lock_until
        ) or account
        logger.warning(
            "login_failed",
            account_id=account.id,
            reason=reason,
            attempts=updated.failed_login_attempts,
        )
        record_audit(
            self.audit,
            action,
            account.id,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
            reason=reason,
            attempts=updated.failed_login_attempts,
        )
        # Only the caller whose increment set this lock reports it
        if updated.locked_until == lock_until:
            logger.warning(
                "account_locked",
                account_id=account.id,
                attempts=updated.failed_login_attempts,
                locked_until=lock_until.isoformat(),
            )
            record_audit(
                self.audit,
                AuditAction.ACCOUNT_LOCKED,
                account.id,
                ip_address=ip_address,
                user_agent=user_agent,
                created_at=now,
                attempts=updated.failed_login_attempts,
                locked_until=lock_until.isoformat(),
            )
            notify(
                self.notifier,
                "send_account_locked",
                updated.email,
                minutes=int(self.lockout.total_seconds() // 60),
            )
        return updated

    def record_success(self, account: Account) -> Optional[Account]:
        return self.store.reset_failed_logins(account.id)

    def verify_account_password(
        self,
        account_id: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account:
        """Re-confirm the signed-in account's password before a sensitive change."""
        account = self.store.get_account(account_id)
        if account is None or account.is_deleted:
            self.hasher.dummy_verify(password or "")
            raise InvalidPasswordError()
        self.ensure_not_locked(account, ip_address=ip_address, user_agent=user_agent)
        if not self.hasher.verify(password or "", account.password_hash):
            self.record_failure(
                account,
                "invalid_password_confirmation",
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise InvalidPasswordError()
        return account


__all__ = ["AccountStore", "CredentialValidator", "email_fingerprint", "minutes_until"]
