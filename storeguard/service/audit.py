from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from storeguard.logging import get_logger
from storeguard.storage.models import utcnow

logger = get_logger(__name__)
_audit_logger = get_logger("storeguard.audit")


class AuditAction(str, Enum):
    CREDENTIALS_VERIFIED = "CREDENTIALS_VERIFIED"
    LOGIN = "LOGIN"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    SESSION_REFRESHED = "SESSION_REFRESHED"
    MFA_ENROLLMENT_STARTED = "MFA_ENROLLMENT_STARTED"
    MFA_ENABLED = "MFA_ENABLED"
    MFA_DISABLED = "MFA_DISABLED"
    MFA_VERIFIED = "MFA_VERIFIED"
    MFA_FAILED = "MFA_FAILED"
    BACKUP_CODE_USED = "BACKUP_CODE_USED"
    BACKUP_CODES_REGENERATED = "BACKUP_CODES_REGENERATED"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET_COMPLETED = "PASSWORD_RESET_COMPLETED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    USER_CREATED = "USER_CREATED"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass
class AuditEvent:
    action: AuditAction
    account_id: Optional[str] = None
    resource: str = "account"
    resource_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        data["created_at"] = self.created_at.isoformat()
        return data


class AuditEmitter(Protocol):
    def emit(self, event: AuditEvent) -> None: ...


class LoggingAuditEmitter:
    """Writes audit events to the ``storeguard.audit`` structlog logger."""

    def emit(self, event: AuditEvent) -> None:
        _audit_logger.info(
            "audit_event",
            action=event.action.value,
            account_id=event.account_id,
            resource=event.resource,
            resource_id=event.resource_id,
            metadata=event.metadata,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            created_at=event.created_at.isoformat(),
        )


class MemoryAuditEmitter:
    """Collects events in memory; used by tests and the dev runtime."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: AuditEvent) -> None:
        with self._lock:
            self.events.append(event)

    def actions(self) -> List[AuditAction]:
        with self._lock:
            return [event.action for event in self.events]

    def of(self, action: AuditAction) -> List[AuditEvent]:
        with self._lock:
            return [event for event in self.events if event.action == action]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()


class FanoutAuditEmitter:
    def __init__(self, *emitters: AuditEmitter) -> None:
        self.emitters = list(emitters)

    def emit(self, event: AuditEvent) -> None:
        for emitter in self.emitters:
            emitter.emit(event)


def record_audit(
    emitter: Optional[AuditEmitter],
    action: AuditAction,
    account_id: Optional[str] = None,
    *,
    resource: str = "account",
    resource_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    created_at: Optional[datetime] = None,
    **metadata: Any,
) -> None:
    """Emit an audit event without ever failing the calling operation."""
    if emitter is None:
        return
    event = AuditEvent(
        action=action,
        account_id=account_id,
        resource=resource,
        resource_id=resource_id or account_id,
        metadata=metadata,
        ip_address=ip_address,
        user_agent=user_agent,
        created_at=created_at or utcnow(),
    )
    try:
        emitter.emit(event)
    except Exception as exc:
        logger.warning(
            "audit_emit_failed",
            action=action.value,
            account_id=account_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )


__all__ = [
    "AuditAction",
    "AuditEvent",
    "AuditEmitter",
    "LoggingAuditEmitter",
    "MemoryAuditEmitter",
    "FanoutAuditEmitter",
    "record_audit",
]
