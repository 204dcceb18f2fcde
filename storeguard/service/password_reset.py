from __future__ import annotations

import asyncio
import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from storeguard.logging import get_logger
from storeguard.service.audit import AuditAction, AuditEmitter, record_audit
from storeguard.service.credentials import AccountStore, email_fingerprint
from storeguard.service.errors import InvalidOrExpiredTokenError, PasswordReusedError
from storeguard.service.notifications import (
    NotificationDispatcher,
    notify,
    notify_in_background,
)
from storeguard.service.passwords import (
    PasswordHasher,
    PasswordHistoryGuard,
    validate_password_strength,
)
from storeguard.service.sessions import SessionService
from storeguard.storage.models import normalize_email, utcnow

logger = get_logger(__name__)


class PasswordResetFlow:
    """Forgot-password token lifecycle.

    ``request`` answers identically for registered and unknown emails, and
    ``reset`` consumes the token in the same conditional update that stores
    the new password, so a token can succeed at most once.
    """

    def __init__(
        self,
        store: AccountStore,
        hasher: PasswordHasher,
        history: PasswordHistoryGuard,
        *,
        sessions: Optional[SessionService] = None,
        audit: Optional[AuditEmitter] = None,
        notifier: Optional[NotificationDispatcher] = None,
        token_ttl: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.history = history
        self.sessions = sessions
        self.audit = audit
        self.notifier = notifier
        self.token_ttl = token_ttl
        self.clock = clock

    async def request(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        normalized = normalize_email(email)
        account = self.store.get_account_by_email(normalized) if normalized else None
        if account is None or account.is_deleted:
            logger.debug("password_reset_unknown_email", email_hash=email_fingerprint(normalized))
            return {"success": True}

        now = self.clock()
        token = secrets.token_hex(32)
        self.store.set_reset_token(account.id, token, now + self.token_ttl)
        # Not awaited; reply latency must not depend on whether the email exists
        notify_in_background(
            self.notifier,
            "send_password_reset",
            account.email,
            token,
            expires_minutes=int(self.token_ttl.total_seconds() // 60),
        )
        logger.info("password_reset_requested", account_id=account.id)
        record_audit(
            self.audit,
            AuditAction.PASSWORD_RESET_REQUESTED,
            account.id,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
        )
        return {"success": True}

    def validate_token(self, token: str) -> Dict[str, Any]:
        account = self.store.get_account_by_reset_token(token) if token else None
        now = self.clock()
        if (
            account is None
            or account.is_deleted
            or account.reset_expires is None
            or account.reset_expires <= now
        ):
            return {"valid": False}
        return {"valid": True, "account_id": account.id}

    async def reset(
        self,
        token: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        validate_password_strength(new_password)

        check = self.validate_token(token)
        if not check["valid"]:
            raise InvalidOrExpiredTokenError()
        account_id = check["account_id"]

        if await asyncio.to_thread(self.history.was_recently_used, account_id, new_password):
            # Token stays valid so the user can retry with another password
            raise PasswordReusedError()

        password_hash = await asyncio.to_thread(self.hasher.hash, new_password)
        now = self.clock()
        account = self.store.consume_reset_token(token, password_hash, now)
        if account is None:
            raise InvalidOrExpiredTokenError()

        self.history.record(account.id, password_hash, now=now)
        revoked = 0
        if self.sessions is not None:
            revoked = await self.sessions.delete_all(account.id, reason="password_reset")
        await asyncio.to_thread(notify, self.notifier, "send_password_changed", account.email)
        logger.info("password_reset_completed", account_id=account.id, sessions_revoked=revoked)
        record_audit(
            self.audit,
            AuditAction.PASSWORD_RESET_COMPLETED,
            account.id,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
            sessions_revoked=revoked,
        )
        return {"success": True}


__all__ = ["PasswordResetFlow"]
