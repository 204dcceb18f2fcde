from __future__ import annotations

import asyncio
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from storeguard.logging import get_logger
from storeguard.service.audit import AuditAction, AuditEmitter, record_audit
from storeguard.service.credentials import AccountStore, CredentialValidator
from storeguard.service.errors import (
    ConflictError,
    InvalidOrExpiredTokenError,
    PasswordReusedError,
    ValidationError,
)
from storeguard.service.notifications import NotificationDispatcher, notify
from storeguard.service.passwords import (
    PasswordHasher,
    PasswordHistoryGuard,
    validate_password_strength,
)
from storeguard.service.sessions import SessionService
from storeguard.storage.errors import ConstraintViolation
from storeguard.storage.models import Account, AccountStatus, Role, normalize_email, utcnow

logger = get_logger(__name__)


class AccountService:
    """Registration, email verification and authenticated password change."""

    def __init__(
        self,
        store: AccountStore,
        hasher: PasswordHasher,
        history: PasswordHistoryGuard,
        credentials: CredentialValidator,
        *,
        sessions: Optional[SessionService] = None,
        audit: Optional[AuditEmitter] = None,
        notifier: Optional[NotificationDispatcher] = None,
        verification_ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.history = history
        self.credentials = credentials
        self.sessions = sessions
        self.audit = audit
        self.notifier = notifier
        self.verification_ttl = verification_ttl
        self.clock = clock

    async def register(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        role: Role | str = Role.CUSTOMER,
        tenant_id: Optional[str] = None,
        email_verified: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account:
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise ValidationError("Invalid email", detail={"fields": {"email": ["Invalid email"]}})
        validate_password_strength(password)

        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        now = self.clock()
        token = None if email_verified else secrets.token_hex(32)
        try:
            account = self.store.create_account(
                normalized,
                password_hash,
                role=Role(role),
                tenant_id=tenant_id,
                name=name,
                email_verified=email_verified,
                verification_token=token,
                verification_expires=now + self.verification_ttl if token else None,
                now=now,
            )
        except ConstraintViolation as exc:
            raise ConflictError("Email already registered", detail={"field": "email"}) from exc

        self.history.record(account.id, password_hash, now=now)
        if token:
            await asyncio.to_thread(
                notify,
                self.notifier,
                "send_email_verification",
                account.email,
                token,
                expires_hours=int(self.verification_ttl.total_seconds() // 3600),
            )
        logger.info("account_registered", account_id=account.id, role=account.role.value)
        record_audit(
            self.audit,
            AuditAction.USER_CREATED,
            account.id,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
            role=account.role.value,
        )
        return account

    def verify_email(self, token: str) -> Account:
        account = self.store.consume_verification_token(token, self.clock())
        if account is None:
            raise InvalidOrExpiredTokenError()
        logger.info("email_verified", account_id=account.id)
        record_audit(self.audit, AuditAction.EMAIL_VERIFIED, account.id)
        return account

    async def change_password(
        self,
        account_id: str,
        current_password: str,
        new_password: str,
        *,
        current_session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account:
        account = await asyncio.to_thread(
            self.credentials.verify_account_password,
            account_id,
            current_password,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        validate_password_strength(new_password, field="newPassword")
        if await asyncio.to_thread(self.history.was_recently_used, account.id, new_password):
            raise PasswordReusedError()

        password_hash = await asyncio.to_thread(self.hasher.hash, new_password)
        now = self.clock()
        updated = self.store.set_password(account.id, password_hash, now) or account
        self.history.record(account.id, password_hash, now=now)
        revoked = 0
        if self.sessions is not None:
            revoked = await self.sessions.delete_all(
                account.id, except_session_id=current_session_id, reason="password_changed"
            )
        await asyncio.to_thread(notify, self.notifier, "send_password_changed", account.email)
        logger.info("password_changed", account_id=account.id, sessions_revoked=revoked)
        record_audit(
            self.audit,
            AuditAction.PASSWORD_CHANGED,
            account.id,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
            sessions_revoked=revoked,
        )
        return updated

    async def ensure_super_admin(
        self, email: str, password: Optional[str] = None, *, name: Optional[str] = None
    ) -> tuple[Account, bool]:
        """Create or promote ``email`` to SUPER_ADMIN; returns ``(account, created)``."""
        existing = self.store.get_account_by_email(email)
        if existing is not None:
            if existing.deleted_at is not None:
                raise ConflictError("Account is deleted")
            updated = self.store.update_account_role(existing.id, Role.SUPER_ADMIN, None)
            if existing.status != AccountStatus.ACTIVE:
                updated = self.store.set_account_status(existing.id, AccountStatus.ACTIVE)
            logger.info("super_admin_promoted", account_id=existing.id)
            return updated or existing, False
        if not password:
            raise ValidationError(
                "Password required to create a new account",
                detail={"fields": {"password": ["Required"]}},
            )
        account = await self.register(
            email, password, name=name, role=Role.SUPER_ADMIN, email_verified=True
        )
        return account, True


__all__ = ["AccountService"]
