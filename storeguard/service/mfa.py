from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import io
import re
import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote, urlencode

import qrcode

from storeguard.logging import get_logger
from storeguard.service.audit import AuditAction, AuditEmitter, record_audit
from storeguard.service.credentials import AccountStore, CredentialValidator
from storeguard.service.errors import ConflictError, InvalidCodeError, NotFoundError
from storeguard.service.notifications import NotificationDispatcher, notify
from storeguard.storage.models import Account, utcnow

logger = get_logger(__name__)

TOTP_DIGITS = 6
TOTP_PERIOD = 30
TOTP_WINDOW = 1
# Unambiguous upper-case alphabet (no 0/O, 1/I/L)
_BACKUP_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
_BACKUP_HALF = 5
_TOTP_RE = re.compile(r"^\d{6}$")


def generate_totp_secret() -> str:
    """160-bit base32 seed without padding."""
    return base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")


def generate_totp(secret: str, timestamp: float, *, period: int = TOTP_PERIOD, digits: int = TOTP_DIGITS) -> str:
    """RFC 6238 HMAC-SHA1 code for ``timestamp``; empty string for a bad seed."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // period).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


def verify_totp(secret: str, code: str, timestamp: float, *, window: int = TOTP_WINDOW) -> bool:
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, timestamp + offset * TOTP_PERIOD)
        # Constant-time comparison
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def build_otpauth_uri(secret: str, email: str, issuer: str) -> str:
    label = quote(f"{issuer}:{email}", safe=":@")
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_PERIOD,
        }
    )
    return f"otpauth://totp/{label}?{params}"


def render_qr_data_url(data: str) -> str:
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


def generate_backup_code() -> str:
    chars = [secrets.choice(_BACKUP_ALPHABET) for _ in range(_BACKUP_HALF * 2)]
    return "".join(chars[:_BACKUP_HALF]) + "-" + "".join(chars[_BACKUP_HALF:])


def normalize_backup_code(code: str) -> str:
    return re.sub(r"[\s-]", "", code or "").upper()


class MFAManager:
    """TOTP enrollment and verification plus single-use backup codes.

    Failures feed the same lockout counter as password failures, so the
    6-digit space gets five guesses per lock window in total, not five per
    factor.
    """

    def __init__(
        self,
        store: AccountStore,
        credentials: CredentialValidator,
        *,
        backup_code_key: str,
        audit: Optional[AuditEmitter] = None,
        notifier: Optional[NotificationDispatcher] = None,
        issuer: str = "StormCom",
        backup_code_count: int = 10,
        backup_code_ttl: timedelta = timedelta(days=90),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self._backup_key = hashlib.sha256(f"backup-codes:{backup_code_key}".encode()).digest()
        self.audit = audit
        self.notifier = notifier
        self.issuer = issuer
        self.backup_code_count = backup_code_count
        self.backup_code_ttl = backup_code_ttl
        self.clock = clock

    def hash_backup_code(self, code: str) -> str:
        return hmac.new(
            self._backup_key, normalize_backup_code(code).encode(), hashlib.sha256
        ).hexdigest()

    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None or account.is_deleted:
            raise NotFoundError("Account not found")
        return account

    def _issue_backup_codes(self, account_id: str) -> List[str]:
        now = self.clock()
        codes = [generate_backup_code() for _ in range(self.backup_code_count)]
        self.store.replace_backup_codes(
            account_id,
            [self.hash_backup_code(code) for code in codes],
            expires_at=now + self.backup_code_ttl,
            now=now,
        )
        return codes

    def _fail(self, account: Account, reason: str) -> InvalidCodeError:
        self.credentials.record_failure(account, reason, action=AuditAction.MFA_FAILED)
        return InvalidCodeError()

    def enroll(self, account_id: str) -> Dict[str, Any]:
        account = self._require_account(account_id)
        if account.mfa_enabled:
            raise ConflictError("MFA is already enabled")
        secret = generate_totp_secret()
        self.store.set_mfa_secret(account_id, secret)
        uri = build_otpauth_uri(secret, account.email, self.issuer)
        backup_codes = self._issue_backup_codes(account_id)
        logger.info("mfa_enrollment_started", account_id=account_id)
        record_audit(self.audit, AuditAction.MFA_ENROLLMENT_STARTED, account_id)
        return {
            "secret": secret,
            "otpauth_uri": uri,
            "qr_code_url": render_qr_data_url(uri),
            "backup_codes": backup_codes,
        }

    def verify_setup(self, account_id: str, code: str) -> bool:
        account = self._require_account(account_id)
        self.credentials.ensure_not_locked(account)
        if account.mfa_enabled:
            raise ConflictError("MFA is already enabled")
        if not account.mfa_secret:
            raise InvalidCodeError("No pending MFA enrollment")
        candidate = (code or "").replace(" ", "")
        if not _TOTP_RE.match(candidate) or not verify_totp(
            account.mfa_secret, candidate, self.clock().timestamp()
        ):
            raise self._fail(account, "invalid_setup_code")
        updated = self.store.enable_mfa(account_id)
        if updated is None:
            raise InvalidCodeError("No pending MFA enrollment")
        self.credentials.record_success(account)
        logger.info("mfa_enabled", account_id=account_id)
        record_audit(self.audit, AuditAction.MFA_ENABLED, account_id)
        notify(self.notifier, "send_mfa_enabled", account.email)
        return True

    def verify_login(self, account_id: str, code: str) -> Dict[str, Any]:
        account = self._require_account(account_id)
        self.credentials.ensure_not_locked(account)
        if not account.mfa_enabled or not account.mfa_secret:
            raise InvalidCodeError()

        now = self.clock()
        candidate = (code or "").replace(" ", "")
        if _TOTP_RE.match(candidate):
            if not verify_totp(account.mfa_secret, candidate, now.timestamp()):
                raise self._fail(account, "invalid_totp_code")
            self.credentials.record_success(account)
            record_audit(self.audit, AuditAction.MFA_VERIFIED, account_id, method="totp")
            return {"success": True, "method": "totp"}

        # Matching and consumption are one conditional update
        if not self.store.consume_backup_code(account_id, self.hash_backup_code(candidate), now):
            raise self._fail(account, "invalid_backup_code")
        self.credentials.record_success(account)
        remaining, _total = self.store.count_backup_codes(account_id, now)
        logger.info("backup_code_used", account_id=account_id, remaining=remaining)
        record_audit(
            self.audit, AuditAction.BACKUP_CODE_USED, account_id, remaining=remaining
        )
        return {"success": True, "method": "backup_code", "remaining_backup_codes": remaining}

    def regenerate_backup_codes(self, account_id: str, password: str) -> List[str]:
        account = self.credentials.verify_account_password(account_id, password)
        if not account.mfa_enabled:
            raise ConflictError("MFA is not enabled")
        codes = self._issue_backup_codes(account_id)
        record_audit(
            self.audit, AuditAction.BACKUP_CODES_REGENERATED, account_id, count=len(codes)
        )
        return codes

    def disable(self, account_id: str, password: str) -> bool:
        account = self.credentials.verify_account_password(account_id, password)
        if not account.mfa_enabled and not account.mfa_secret:
            return False
        self.store.disable_mfa(account_id)
        logger.info("mfa_disabled", account_id=account_id)
        record_audit(self.audit, AuditAction.MFA_DISABLED, account_id)
        notify(self.notifier, "send_mfa_disabled", account.email)
        return True

    def status(self, account_id: str) -> Dict[str, Any]:
        account = self._require_account(account_id)
        remaining, total = self.store.count_backup_codes(account_id, self.clock())
        return {
            "enabled": account.mfa_enabled,
            "pending": bool(account.mfa_secret) and not account.mfa_enabled,
            "backup_codes_remaining": remaining if account.mfa_enabled else 0,
            "backup_codes_total": total if account.mfa_enabled else 0,
        }


__all__ = [
    "MFAManager",
    "generate_totp",
    "generate_totp_secret",
    "verify_totp",
    "build_otpauth_uri",
    "generate_backup_code",
    "normalize_backup_code",
]
