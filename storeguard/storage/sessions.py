from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Set

from storeguard.storage.models import Session


class SessionStore(Protocol):
    """Backing store for server-side sessions.

    Every mutation is a single conditional operation on the backend: two
    callers racing on the same session id can never resurrect a deleted
    record or observe a half-applied update.
    """

    async def put(self, session: Session) -> None: ...

    async def get(self, session_id: str) -> Optional[Session]: ...

    async def touch(self, session_id: str, now: datetime) -> bool: ...

    async def extend(self, session_id: str, expires_at: datetime, now: datetime) -> bool: ...

    async def mark_mfa_verified(self, session_id: str) -> bool: ...

    async def pop(self, session_id: str) -> Optional[Session]: ...

    async def delete_account_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> List[str]: ...

    async def list_account_sessions(self, account_id: str) -> List[Session]: ...

    async def cleanup_expired(
        self, now: datetime, idle_before: Optional[datetime] = None
    ) -> int: ...


class MemorySessionStore:
    """Dict-backed session store for tests and single-process development."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._by_account: Dict[str, Set[str]] = {}
        self._lock = threading.RLock()

    def _remove(self, session_id: str) -> Optional[Session]:
        sess = self._sessions.pop(session_id, None)
        if sess is not None:
            ids = self._by_account.get(sess.account_id)
            if ids is not None:
                ids.discard(session_id)
                if not ids:
                    self._by_account.pop(sess.account_id, None)
        return sess

    async def put(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.id] = replace(session)
            self._by_account.setdefault(session.account_id, set()).add(session.id)

    async def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            sess = self._sessions.get(session_id)
            return replace(sess) if sess else None

    async def touch(self, session_id: str, now: datetime) -> bool:
        with self._lock:
            sess = self._sessions.get(session_id)
            if sess is None:
                return False
            sess.last_accessed_at = now
            return True

    async def extend(self, session_id: str, expires_at: datetime, now: datetime) -> bool:
        with self._lock:
            sess = self._sessions.get(session_id)
            if sess is None:
                return False
            # Concurrent refreshes converge on the latest expiry
            if expires_at > sess.expires_at:
                sess.expires_at = expires_at
            sess.last_accessed_at = now
            return True

    async def mark_mfa_verified(self, session_id: str) -> bool:
        with self._lock:
            sess = self._sessions.get(session_id)
            if sess is None:
                return False
            sess.mfa_verified = True
            return True

    async def pop(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._remove(session_id)

    async def delete_account_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> List[str]:
        with self._lock:
            removed = []
            for session_id in list(self._by_account.get(account_id, ())):
                if except_session_id and session_id == except_session_id:
                    continue
                if self._remove(session_id) is not None:
                    removed.append(session_id)
            return removed

    async def list_account_sessions(self, account_id: str) -> List[Session]:
        with self._lock:
            return [
                replace(self._sessions[session_id])
                for session_id in self._by_account.get(account_id, ())
                if session_id in self._sessions
            ]

    async def cleanup_expired(
        self, now: datetime, idle_before: Optional[datetime] = None
    ) -> int:
        with self._lock:
            stale = [
                sess.id
                for sess in self._sessions.values()
                if sess.expires_at <= now
                or (idle_before is not None and sess.last_accessed_at <= idle_before)
            ]
            for session_id in stale:
                self._remove(session_id)
            return len(stale)


__all__ = ["SessionStore", "MemorySessionStore"]
