from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from storeguard.logging import get_logger
from storeguard.service.audit import AuditAction, AuditEmitter, record_audit
from storeguard.service.credentials import AccountStore
from storeguard.storage.models import AccountStatus, Role, Session, utcnow
from storeguard.storage.sessions import SessionStore

logger = get_logger(__name__)


class SessionService:
    """Issues, validates, refreshes and revokes server-side sessions.

    Lifecycle: Created -> [Refreshed]* -> LoggedOut | Expired | Invalidated.
    Every terminal state removes the record from the store, so a session id
    that once failed validation can never validate again.
    """

    def __init__(
        self,
        store: SessionStore,
        accounts: AccountStore,
        *,
        audit: Optional[AuditEmitter] = None,
        max_age: timedelta = timedelta(hours=12),
        idle_timeout: timedelta = timedelta(days=7),
        refresh_threshold: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.accounts = accounts
        self.audit = audit
        self.max_age = max_age
        self.idle_timeout = idle_timeout
        self.refresh_threshold = refresh_threshold
        self.clock = clock

    async def create(
        self,
        account_id: str,
        email: str,
        role: Role | str,
        tenant_id: Optional[str],
        mfa_verified: bool,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        now = self.clock()
        session = Session(
            id=secrets.token_hex(32),
            account_id=account_id,
            email=email,
            role=Role(role),
            tenant_id=tenant_id,
            mfa_verified=mfa_verified,
            created_at=now,
            expires_at=now + self.max_age,
            last_accessed_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self.store.put(session)
        logger.info("session_created", account_id=account_id, mfa_verified=mfa_verified)
        record_audit(
            self.audit,
            AuditAction.LOGIN,
            account_id,
            resource="session",
            resource_id=session.id[:8],
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
            mfa_verified=mfa_verified,
        )
        return session

    async def _invalidate(self, session: Session, reason: str) -> None:
        removed = await self.store.pop(session.id)
        if removed is None:
            return
        logger.info("session_invalidated", account_id=session.account_id, reason=reason)
        record_audit(
            self.audit,
            AuditAction.LOGOUT,
            session.account_id,
            resource="session",
            resource_id=session.id[:8],
            reason=reason,
        )

    async def get(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        session = await self.store.get(session_id)
        if session is None:
            return None

        now = self.clock()
        if session.expires_at <= now:
            await self.store.pop(session_id)
            logger.info("session_expired", account_id=session.account_id)
            return None
        if session.last_accessed_at + self.idle_timeout <= now:
            await self.store.pop(session_id)
            logger.info("session_idle_expired", account_id=session.account_id)
            return None

        account = self.accounts.get_account(session.account_id)
        if (
            account is None
            or account.is_deleted
            or account.role != session.role
            or account.tenant_id != session.tenant_id
        ):
            await self._invalidate(session, "role_or_store_changed")
            return None
        if account.status != AccountStatus.ACTIVE:
            await self._invalidate(session, "account_not_active")
            return None

        if not await self.store.touch(session_id, now):
            # Deleted concurrently between read and touch
            return None
        session.last_accessed_at = now
        return session

    async def validate_and_refresh(self, session_id: Optional[str]) -> Optional[Session]:
        session = await self.get(session_id)
        if session is None:
            return None
        now = self.clock()
        if session.expires_at - now >= self.refresh_threshold:
            return session
        new_expiry = now + self.max_age
        if not await self.store.extend(session.id, new_expiry, now):
            return None
        session.expires_at = new_expiry
        logger.info("session_refreshed", account_id=session.account_id)
        record_audit(
            self.audit,
            AuditAction.SESSION_REFRESHED,
            session.account_id,
            resource="session",
            resource_id=session.id[:8],
            created_at=now,
        )
        return session

    async def delete(self, session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        session = await self.store.pop(session_id)
        if session is None:
            return False
        record_audit(
            self.audit,
            AuditAction.LOGOUT,
            session.account_id,
            resource="session",
            resource_id=session.id[:8],
            ip_address=session.ip_address,
            user_agent=session.user_agent,
        )
        return True

    async def delete_all(
        self, account_id: str, except_session_id: Optional[str] = None, *, reason: str = "logout_all"
    ) -> int:
        removed = await self.store.delete_account_sessions(account_id, except_session_id)
        for session_id in removed:
            record_audit(
                self.audit,
                AuditAction.LOGOUT,
                account_id,
                resource="session",
                resource_id=session_id[:8],
                reason=reason,
            )
        if removed:
            logger.info("sessions_revoked", account_id=account_id, count=len(removed), reason=reason)
        return len(removed)

    async def update_mfa_status(self, session_id: str, verified: bool) -> bool:
        """Mark a session MFA-verified; the flag never goes back to False."""
        if not verified:
            logger.warning("session_mfa_downgrade_refused")
            return False
        return await self.store.mark_mfa_verified(session_id)

    async def list_sessions(self, account_id: str) -> List[Session]:
        now = self.clock()
        sessions = await self.store.list_account_sessions(account_id)
        live = [
            sess
            for sess in sessions
            if sess.expires_at > now and sess.last_accessed_at + self.idle_timeout > now
        ]
        return sorted(live, key=lambda sess: sess.last_accessed_at, reverse=True)

    async def cleanup_expired(self) -> int:
        now = self.clock()
        removed = await self.store.cleanup_expired(now, idle_before=now - self.idle_timeout)
        if removed:
            logger.info("sessions_cleaned_up", count=removed)
        return removed


__all__ = ["SessionService"]
