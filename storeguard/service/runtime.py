from __future__ import annotations

import asyncio
import threading
import time
from datetime import timedelta
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from storeguard.config import get_settings, reset_settings_cache
from storeguard.logging import get_logger
from storeguard.service.accounts import AccountService
from storeguard.service.audit import (
    AuditEmitter,
    FanoutAuditEmitter,
    LoggingAuditEmitter,
    MemoryAuditEmitter,
)
from storeguard.service.credentials import CredentialValidator
from storeguard.service.csrf import CsrfTokenService
from storeguard.service.mfa import MFAManager
from storeguard.service.notifications import NotificationDispatcher
from storeguard.service.password_reset import PasswordResetFlow
from storeguard.service.passwords import PasswordHasher, PasswordHistoryGuard
from storeguard.service.sessions import SessionService
from storeguard.storage.memory import MemoryStore
from storeguard.storage.postgres import PostgresStore
from storeguard.storage.redis_cache import RedisCache
from storeguard.storage.sessions import MemorySessionStore, SessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(mfa_encryption_key=settings.mfa_encryption_key)
                if settings.use_memory_store
                else PostgresStore(
                    settings.database_url, mfa_encryption_key=settings.mfa_encryption_key
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                cache = RedisCache(settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not settings.test_mode and not settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for sessions and rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions and rate "
                    "limits are in-process only."
                ),
                mode=fallback_mode,
            )

        self.session_store: SessionStore = (
            self.cache.sessions if self.cache else MemorySessionStore()
        )

        # Test runs keep an inspectable copy of every audit event
        self.audit_log: Optional[MemoryAuditEmitter] = (
            MemoryAuditEmitter() if settings.test_mode else None
        )
        self.audit: AuditEmitter = (
            FanoutAuditEmitter(LoggingAuditEmitter(), self.audit_log)
            if self.audit_log
            else LoggingAuditEmitter()
        )
        self.notifier = NotificationDispatcher.from_settings(settings)
        self.hasher = PasswordHasher.from_settings(settings)
        self.history = PasswordHistoryGuard(
            self.store,
            self.hasher,
            reuse_window=settings.password_reuse_window,
            retention=settings.password_history_retention,
        )
        self.credentials = CredentialValidator(
            self.store,
            self.hasher,
            audit=self.audit,
            notifier=self.notifier,
            max_attempts=settings.lockout_max_attempts,
            lockout_minutes=settings.lockout_duration_minutes,
            require_email_verification=settings.require_email_verification,
        )
        self.sessions = SessionService(
            self.session_store,
            self.store,
            audit=self.audit,
            max_age=timedelta(hours=settings.session_max_age_hours),
            idle_timeout=timedelta(days=settings.session_idle_timeout_days),
            refresh_threshold=timedelta(minutes=settings.session_refresh_threshold_minutes),
        )
        self.mfa = MFAManager(
            self.store,
            self.credentials,
            backup_code_key=settings.mfa_encryption_key,
            audit=self.audit,
            notifier=self.notifier,
            issuer=settings.mfa_issuer,
            backup_code_count=settings.mfa_backup_code_count,
            backup_code_ttl=timedelta(days=settings.mfa_backup_code_ttl_days),
        )
        self.resets = PasswordResetFlow(
            self.store,
            self.hasher,
            self.history,
            sessions=self.sessions,
            audit=self.audit,
            notifier=self.notifier,
            token_ttl=timedelta(minutes=settings.reset_token_ttl_minutes),
        )
        self.accounts = AccountService(
            self.store,
            self.hasher,
            self.history,
            self.credentials,
            sessions=self.sessions,
            audit=self.audit,
            notifier=self.notifier,
            verification_ttl=timedelta(hours=settings.email_verification_ttl_hours),
        )
        self.csrf = CsrfTokenService(
            settings.csrf_secret, ttl_seconds=settings.csrf_ttl_hours * 3600
        )

        # key -> (tokens, last_refill_monotonic)
        self._local_rate_limits: Dict[str, Tuple[float, float]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.notifier.is_configured,
            store_type="memory" if settings.use_memory_store else "postgres",
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                asyncio.run(runtime.cache.close())
            except RuntimeError as exc:
                # Called from inside a running loop; the pool is dropped with the runtime
                logger.warning("runtime_cache_close_skipped", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int = 60,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit backed by Redis, or by process memory without it."""
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = time.monotonic()
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        tokens = min(float(limit), tokens + max(0.0, now - last_ts) * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests", "check_rate_limit"]
