from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from storeguard.api.schemas import (
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    MFAVerifyRequest,
    PasswordChangeRequest,
    PasswordConfirmRequest,
    RegisterRequest,
    ResetPasswordRequest,
)
from storeguard.logging import get_logger
from storeguard.service.runtime import Runtime, check_rate_limit, get_runtime
from storeguard.storage.common import normalize_ip_address
from storeguard.storage.models import Account, Session

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# Same body for known and unknown addresses
_RESET_REQUESTED_MESSAGE = "If an account exists for that email, a reset link has been sent."


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _client_ip(request: Request) -> Optional[str]:
    return normalize_ip_address(request.client.host if request.client else None)


def _user_agent(request: Request) -> Optional[str]:
    agent = request.headers.get("user-agent")
    return agent[:512] if agent else None


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int = 60,
    *,
    response: Optional[Response] = None,
) -> None:
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
    if not allowed:
        logger.warning("rate_limit_exceeded", key_prefix=key.split(":", 1)[0])
        raise _http_error(
            "RATE_LIMIT_EXCEEDED",
            "Too many requests, please try again later",
            status_code=429,
            headers={"Retry-After": str(max(1, reset_seconds))},
        )


def _set_session_cookie(response: Response, runtime: Runtime, session: Session) -> None:
    expires_at = session.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    response.set_cookie(
        runtime.settings.session_cookie_name,
        session.id,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        expires=expires_at,
        path="/",
    )


def _set_csrf_cookie(response: Response, runtime: Runtime, token: str) -> None:
    response.set_cookie(
        runtime.settings.csrf_cookie_name,
        token,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        max_age=runtime.csrf.ttl_seconds,
        path="/",
    )


def _clear_auth_cookies(response: Response, runtime: Runtime) -> None:
    response.delete_cookie(runtime.settings.session_cookie_name, path="/")
    response.delete_cookie(runtime.settings.csrf_cookie_name, path="/")


@dataclass
class AuthContext:
    session: Session
    account: Account


async def _load_context(request: Request, response: Response) -> AuthContext:
    runtime = get_runtime()
    session_id = request.cookies.get(runtime.settings.session_cookie_name)
    session = await runtime.sessions.validate_and_refresh(session_id)
    if session is None:
        raise _http_error("UNAUTHORIZED", "Authentication required", status_code=401)
    account = await asyncio.to_thread(runtime.store.get_account, session.account_id)
    if account is None:
        raise _http_error("UNAUTHORIZED", "Authentication required", status_code=401)
    # Keeps the cookie expiry in step with a refreshed session
    _set_session_cookie(response, runtime, session)
    return AuthContext(session=session, account=account)


async def get_session_allow_pending(request: Request, response: Response) -> AuthContext:
    """Authenticated session that may still be waiting on its MFA challenge."""
    return await _load_context(request, response)


async def get_session(request: Request, response: Response) -> AuthContext:
    ctx = await _load_context(request, response)
    if not ctx.session.mfa_verified:
        raise _http_error(
            "UNAUTHORIZED",
            "MFA verification required",
            status_code=401,
            details={"requiresMFA": True},
        )
    return ctx


@router.get("/session", response_model=Envelope, tags=["auth"])
async def current_session(ctx: AuthContext = Depends(get_session_allow_pending)):
    return Envelope(
        status="ok",
        data={
            "user": ctx.account.public_view(),
            "session": ctx.session.public_view(),
            "requiresMFA": not ctx.session.mfa_verified,
        },
    )


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a customer account and send the verification email."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{body.email}",
        runtime.settings.register_rate_limit_per_minute,
        response=response,
    )
    account = await runtime.accounts.register(
        body.email,
        body.password,
        name=body.name,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(
        status="ok",
        data={
            "user": account.public_view(),
            "verificationRequired": not account.email_verified,
        },
    )


@router.post("/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    account = await asyncio.to_thread(runtime.accounts.verify_email, body.token)
    return Envelope(status="ok", data={"verified": True, "user": account.public_view()})


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Check credentials and open a session.

    Accounts with MFA enabled get a pending session; only ``/v1/session``,
    ``/v1/mfa/verify`` and ``/v1/logout`` accept it until the second factor
    has been verified.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    ip_address = _client_ip(request)
    user_agent = _user_agent(request)
    account = await asyncio.to_thread(
        runtime.credentials.validate,
        body.email,
        body.password,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    session = await runtime.sessions.create(
        account.id,
        account.email,
        account.role,
        account.tenant_id,
        mfa_verified=not account.mfa_enabled,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    csrf_token = runtime.csrf.issue()
    _set_session_cookie(response, runtime, session)
    _set_csrf_cookie(response, runtime, csrf_token)
    return Envelope(
        status="ok",
        data={
            "user": account.public_view(),
            "requiresMFA": not session.mfa_verified,
            "expiresAt": session.expires_at.isoformat(),
            "csrfToken": csrf_token,
        },
    )


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    session_id = request.cookies.get(runtime.settings.session_cookie_name)
    await runtime.sessions.delete(session_id)
    _clear_auth_cookies(response, runtime)
    return Envelope(status="ok", data={"success": True})


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(ctx: AuthContext = Depends(get_session)):
    runtime = get_runtime()
    sessions = await runtime.sessions.list_sessions(ctx.account.id)
    items = []
    for sess in sessions:
        view = sess.public_view()
        view["current"] = sess.id == ctx.session.id
        items.append(view)
    return Envelope(status="ok", data={"sessions": items})


@router.post("/sessions/revoke-all", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(ctx: AuthContext = Depends(get_session)):
    runtime = get_runtime()
    revoked = await runtime.sessions.delete_all(
        ctx.account.id, except_session_id=ctx.session.id, reason="user_revoked"
    )
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, request: Request, ctx: AuthContext = Depends(get_session)
):
    runtime = get_runtime()
    await runtime.accounts.change_password(
        ctx.account.id,
        body.current_password,
        body.new_password,
        current_session_id=ctx.session.id,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data={"success": True})


@router.post("/mfa/enroll", response_model=Envelope, tags=["mfa"])
async def mfa_enroll(ctx: AuthContext = Depends(get_session)):
    """Start TOTP enrollment; MFA stays off until ``/v1/mfa/verify`` with type ``setup``."""
    runtime = get_runtime()
    enrollment = await asyncio.to_thread(runtime.mfa.enroll, ctx.account.id)
    return Envelope(
        status="ok",
        data={
            "secret": enrollment["secret"],
            "otpauthUri": enrollment["otpauth_uri"],
            "qrCodeUrl": enrollment["qr_code_url"],
            "backupCodes": enrollment["backup_codes"],
        },
    )


@router.post("/mfa/verify", response_model=Envelope, tags=["mfa"])
async def mfa_verify(
    body: MFAVerifyRequest,
    response: Response,
    ctx: AuthContext = Depends(get_session_allow_pending),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:{ctx.account.id}",
        runtime.settings.mfa_rate_limit_per_minute,
        response=response,
    )
    if body.type == "setup":
        if not ctx.session.mfa_verified:
            raise _http_error("UNAUTHORIZED", "MFA verification required", status_code=401)
        await asyncio.to_thread(runtime.mfa.verify_setup, ctx.account.id, body.code)
        return Envelope(status="ok", data={"success": True, "mfaEnabled": True})

    result = await asyncio.to_thread(runtime.mfa.verify_login, ctx.account.id, body.code)
    await runtime.sessions.update_mfa_status(ctx.session.id, True)
    data = {"success": True, "method": result["method"]}
    if "remaining_backup_codes" in result:
        data["remainingBackupCodes"] = result["remaining_backup_codes"]
    return Envelope(status="ok", data=data)


@router.post("/mfa/backup-codes", response_model=Envelope, tags=["mfa"])
async def mfa_regenerate_backup_codes(
    body: PasswordConfirmRequest, ctx: AuthContext = Depends(get_session)
):
    runtime = get_runtime()
    codes = await asyncio.to_thread(
        runtime.mfa.regenerate_backup_codes, ctx.account.id, body.password
    )
    return Envelope(status="ok", data={"backupCodes": codes})


@router.post("/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(body: PasswordConfirmRequest, ctx: AuthContext = Depends(get_session)):
    runtime = get_runtime()
    disabled = await asyncio.to_thread(runtime.mfa.disable, ctx.account.id, body.password)
    return Envelope(status="ok", data={"disabled": disabled})


@router.get("/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(ctx: AuthContext = Depends(get_session)):
    runtime = get_runtime()
    status = await asyncio.to_thread(runtime.mfa.status, ctx.account.id)
    return Envelope(
        status="ok",
        data={
            "enabled": status["enabled"],
            "pending": status["pending"],
            "backupCodesRemaining": status["backup_codes_remaining"],
            "backupCodesTotal": status["backup_codes_total"],
        },
    )


@router.post("/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request, response: Response):
    """Request a reset link with ``{email}`` or complete one with ``{token, password}``.

    The request form answers identically whether or not the address exists.
    """
    runtime = get_runtime()
    ip_address = _client_ip(request)
    user_agent = _user_agent(request)
    if body.is_completion:
        await _enforce_rate_limit(
            runtime,
            f"reset:complete:{ip_address or 'unknown'}",
            runtime.settings.reset_rate_limit_per_minute,
            response=response,
        )
        await runtime.resets.reset(
            body.token, body.password, ip_address=ip_address, user_agent=user_agent
        )
        return Envelope(status="ok", data={"success": True})

    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        response=response,
    )
    await runtime.resets.request(body.email, ip_address=ip_address, user_agent=user_agent)
    return Envelope(status="ok", data={"success": True, "message": _RESET_REQUESTED_MESSAGE})


@router.get("/reset-password/validate", response_model=Envelope, tags=["auth"])
async def validate_reset_token(token: str = Query("", max_length=256)):
    runtime = get_runtime()
    result = await asyncio.to_thread(runtime.resets.validate_token, token)
    return Envelope(status="ok", data={"valid": result["valid"]})


@router.get("/csrf-token", response_model=Envelope, tags=["auth"])
async def csrf_token(response: Response):
    runtime = get_runtime()
    token = runtime.csrf.issue()
    _set_csrf_cookie(response, runtime, token)
    return Envelope(status="ok", data={"csrfToken": token, "expiresIn": runtime.csrf.ttl_seconds})
