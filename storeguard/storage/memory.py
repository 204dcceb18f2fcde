from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from storeguard.logging import get_logger
from storeguard.storage.common import MfaSecretCipher, normalize_ip_address
from storeguard.storage.errors import ConstraintViolation
from storeguard.storage.models import (
    Account,
    AccountStatus,
    BackupCode,
    PasswordHistoryEntry,
    Role,
    normalize_email,
    utcnow,
)


class MemoryStore:
    """In-memory account store for tests and single-process development.

    Every public method runs inside one ``RLock`` critical section, which is
    what makes the conditional updates (lockout counter, reset-token and
    backup-code consumption) atomic with respect to concurrent callers.
    """

    def __init__(self, *, mfa_encryption_key: str) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.password_history: Dict[str, List[PasswordHistoryEntry]] = {}
        self.backup_codes: Dict[str, List[BackupCode]] = {}
        # RLock so helpers can re-enter while a caller already holds it
        self._data_lock = threading.RLock()
        self._mfa_cipher = MfaSecretCipher(mfa_encryption_key)

    def _view(self, account: Optional[Account]) -> Optional[Account]:
        """Return a detached copy with the MFA secret decrypted."""
        if account is None:
            return None
        return replace(account, mfa_secret=self._mfa_cipher.decrypt(account.mfa_secret))

    def _find_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        for account in self.accounts.values():
            if account.email == normalized:
                return account
        return None

    # -- accounts -------------------------------------------------------

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
    ) -> Account:
        with self._data_lock:
            if self._find_by_email(email):
                raise ConstraintViolation("email already exists", field="email")
            created = now or utcnow()
            account = Account(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                role=role,
                tenant_id=tenant_id,
                status=status,
                name=name,
                email_verified=email_verified,
                verification_token=verification_token,
                verification_expires=verification_expires,
                password_changed_at=created,
                created_at=created,
            )
            self.accounts[account.id] = account
            return self._view(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self._view(self.accounts.get(account_id))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return self._view(self._find_by_email(email))

    def update_account_role(
        self, account_id: str, role: Role | str, tenant_id: Optional[str] = None
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.role = Role(role)
            account.tenant_id = tenant_id
            return self._view(account)

    def set_account_status(
        self, account_id: str, status: AccountStatus | str, *, now: Optional[datetime] = None
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.status = AccountStatus(status)
            if account.status == AccountStatus.DELETED and account.deleted_at is None:
                account.deleted_at = now or utcnow()
            return self._view(account)

    # -- lockout --------------------------------------------------------

    def record_failed_login(
        self, account_id: str, now: datetime, max_attempts: int, lock_until: datetime
    ) -> Optional[Account]:
        """Increment the failure counter and lock once it reaches ``max_attempts``."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.failed_login_attempts += 1
            if account.failed_login_attempts >= max_attempts:
                account.locked_until = lock_until
            return self._view(account)

    def record_successful_login(
        self,
        account_id: str,
        now: datetime,
        ip_address: Optional[str] = None,
        *,
        clear_lockout: bool = True,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if clear_lockout:
                account.failed_login_attempts = 0
                account.locked_until = None
            account.last_login_at = now
            account.last_login_ip = normalize_ip_address(ip_address)
            return self._view(account)

    def reset_failed_logins(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.failed_login_attempts = 0
            account.locked_until = None
            return self._view(account)

    # -- passwords ------------------------------------------------------

    def update_password_hash(self, account_id: str, password_hash: str) -> bool:
        """Swap the stored hash in place (parameter upgrades only)."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.password_hash = password_hash
            return True

    def set_password(
        self, account_id: str, password_hash: str, now: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.password_hash = password_hash
            account.password_changed_at = now
            account.reset_token = None
            account.reset_expires = None
            account.failed_login_attempts = 0
            account.locked_until = None
            return self._view(account)

    def add_password_history(
        self, account_id: str, hashed_password: str, *, retain: int, now: Optional[datetime] = None
    ) -> PasswordHistoryEntry:
        with self._data_lock:
            entry = PasswordHistoryEntry(
                account_id=account_id,
                hashed_password=hashed_password,
                created_at=now or utcnow(),
            )
            entries = self.password_history.setdefault(account_id, [])
            entries.append(entry)
            entries.sort(key=lambda e: e.created_at, reverse=True)
            del entries[retain:]
            return entry

    def list_password_history(
        self, account_id: str, limit: int
    ) -> List[PasswordHistoryEntry]:
        with self._data_lock:
            entries = self.password_history.get(account_id, [])
            return list(entries[:limit])

    # -- reset and verification tokens ---------------------------------

    def set_reset_token(
        self, account_id: str, token: str, expires_at: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.reset_token = token
            account.reset_expires = expires_at
            return self._view(account)

    def get_account_by_reset_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        with self._data_lock:
            for account in self.accounts.values():
                if account.reset_token == token:
                    return self._view(account)
            return None

    def consume_reset_token(
        self, token: str, password_hash: str, now: datetime
    ) -> Optional[Account]:
        """Set the password if ``token`` is still live; None when already consumed."""
        if not token:
            return None
        with self._data_lock:
            for account in self.accounts.values():
                if (
                    account.reset_token == token
                    and account.reset_expires is not None
                    and account.reset_expires > now
                    and account.deleted_at is None
                ):
                    return self.set_password(account.id, password_hash, now)
            return None

    def set_verification_token(
        self, account_id: str, token: str, expires_at: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.verification_token = token
            account.verification_expires = expires_at
            return self._view(account)

    def consume_verification_token(self, token: str, now: datetime) -> Optional[Account]:
        if not token:
            return None
        with self._data_lock:
            for account in self.accounts.values():
                if (
                    account.verification_token == token
                    and account.verification_expires is not None
                    and account.verification_expires > now
                    and account.deleted_at is None
                ):
                    account.email_verified = True
                    account.verification_token = None
                    account.verification_expires = None
                    return self._view(account)
            return None

    # -- MFA ------------------------------------------------------------

    def set_mfa_secret(self, account_id: str, secret: str) -> Optional[Account]:
        """Store a pending secret; MFA stays disabled until confirmed."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.mfa_secret = self._mfa_cipher.encrypt(secret)
            account.mfa_enabled = False
            return self._view(account)

    def enable_mfa(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or not account.mfa_secret:
                return None
            account.mfa_enabled = True
            account.failed_login_attempts = 0
            account.locked_until = None
            return self._view(account)

    def disable_mfa(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.mfa_enabled = False
            account.mfa_secret = None
            self.backup_codes.pop(account_id, None)
            return self._view(account)

    def replace_backup_codes(
        self,
        account_id: str,
        hashed_codes: Iterable[str],
        *,
        expires_at: datetime,
        now: datetime,
    ) -> List[BackupCode]:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for backup codes", {"account_id": account_id}
                )
            batch = [
                BackupCode(
                    account_id=account_id,
                    hashed_code=hashed,
                    expires_at=expires_at,
                    created_at=now,
                )
                for hashed in hashed_codes
            ]
            self.backup_codes[account_id] = batch
            return list(batch)

    def consume_backup_code(self, account_id: str, hashed_code: str, now: datetime) -> bool:
        with self._data_lock:
            for code in self.backup_codes.get(account_id, []):
                if code.hashed_code == hashed_code and code.is_usable(now):
                    code.used = True
                    code.used_at = now
                    return True
            return False

    def count_backup_codes(self, account_id: str, now: datetime) -> Tuple[int, int]:
        """Return ``(remaining, total)`` for the current batch."""
        with self._data_lock:
            batch = self.backup_codes.get(account_id, [])
            remaining = sum(1 for code in batch if code.is_usable(now))
            return remaining, len(batch)

    def ping(self) -> bool:
        return True


__all__ = ["MemoryStore"]
