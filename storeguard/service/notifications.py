from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Iterable, Optional, Set

from storeguard.logging import get_logger

logger = get_logger(__name__)


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if not email or "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _render(title: str, paragraphs: Iterable[str], footer: str) -> tuple[str, str]:
    """Build matching HTML and plain-text bodies from escaped paragraphs."""
    paragraphs = list(paragraphs)
    html_paragraphs = "\n".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
    html_body = (
        "<!DOCTYPE html>\n<html><head><meta charset=\"utf-8\"></head><body>"
        f"<h1>{html.escape(title)}</h1>\n{html_paragraphs}\n"
        f"<p style=\"font-size:12px;color:#5b6470\">{html.escape(footer)}</p>"
        "</body></html>"
    )
    text_body = "\n\n".join([title, *paragraphs, f"---\n{footer}"]) + "\n"
    return html_body, text_body


class NotificationDispatcher:
    """Sends transactional account-security emails over SMTP.

    When SMTP is not configured the message is logged instead of sent, which
    keeps local development and tests free of network access. Delivery
    failures are logged and reported as ``False``; they never raise.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "StormCom",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @classmethod
    def from_settings(cls, settings) -> "NotificationDispatcher":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        if not self.is_configured:
            # Dev mode: log instead of sending; bodies may carry tokens
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                refused_count=len(getattr(e, "recipients", {}) or {}),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            # Connection refused, DNS failure, timeout
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_password_reset(self, to_email: str, token: str, *, expires_minutes: int = 60) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = _render(
            "Reset your password",
            [
                "We received a request to reset your password. Use the link below to choose a new one:",
                reset_url,
                f"This link expires in {expires_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            self.from_name,
        )
        return self._send_email(to_email, f"Reset your {self.from_name} password", html_body, text_body)

    def send_email_verification(self, to_email: str, token: str, *, expires_hours: int = 24) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = _render(
            "Verify your email",
            [
                "Thanks for signing up! Please verify your email address using the link below:",
                verify_url,
                f"This link expires in {expires_hours} hours.",
            ],
            self.from_name,
        )
        return self._send_email(to_email, f"Verify your {self.from_name} email", html_body, text_body)

    def send_password_changed(self, to_email: str) -> bool:
        html_body, text_body = _render(
            "Your password was changed",
            [
                "The password for your account was just changed and all other sessions were signed out.",
                "If you didn't make this change, reset your password immediately and contact support.",
            ],
            self.from_name,
        )
        return self._send_email(to_email, "Your password was changed", html_body, text_body)

    def send_account_locked(self, to_email: str, *, minutes: int) -> bool:
        html_body, text_body = _render(
            "Account temporarily locked",
            [
                "We locked your account after several failed sign-in attempts.",
                f"You can try again in {minutes} minutes, or reset your password now.",
            ],
            self.from_name,
        )
        return self._send_email(to_email, "Your account was temporarily locked", html_body, text_body)

    def send_mfa_enabled(self, to_email: str) -> bool:
        html_body, text_body = _render(
            "Two-factor authentication enabled",
            [
                "Two-factor authentication is now enabled on your account.",
                "You will need a code from your authenticator app, or a backup code, when signing in.",
                "If you didn't make this change, please contact support immediately.",
            ],
            self.from_name,
        )
        return self._send_email(to_email, "Two-factor authentication enabled", html_body, text_body)

    def send_mfa_disabled(self, to_email: str) -> bool:
        html_body, text_body = _render(
            "Two-factor authentication disabled",
            [
                "Two-factor authentication was turned off for your account.",
                "If you didn't make this change, reset your password and contact support immediately.",
            ],
            self.from_name,
        )
        return self._send_email(to_email, "Two-factor authentication disabled", html_body, text_body)


def notify(dispatcher: Optional[NotificationDispatcher], method: str, *args, **kwargs) -> bool:
    """Best-effort dispatch: a failing notifier is logged, never raised."""
    if dispatcher is None:
        return False
    try:
        return bool(getattr(dispatcher, method)(*args, **kwargs))
    except Exception as exc:
        logger.warning(
            "notification_failed",
            kind=method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return False


_background: Set["asyncio.Task[bool]"] = set()


def _background_done(task: "asyncio.Task[bool]") -> None:
    _background.discard(task)
    if task.cancelled():
        logger.warning("notification_cancelled")
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(
            "notification_failed",
            error_type=type(exc).__name__,
            error=str(exc),
        )


def notify_in_background(
    dispatcher: Optional[NotificationDispatcher], method: str, *args, **kwargs
) -> Optional["asyncio.Task[bool]"]:
    """Schedule ``notify`` on a worker thread and return without waiting for SMTP.

    Must be called from a running event loop. The task is held until it
    finishes so it cannot be garbage collected mid-send.
    """
    if dispatcher is None:
        return None
    task = asyncio.create_task(
        asyncio.to_thread(notify, dispatcher, method, *args, **kwargs)
    )
    _background.add(task)
    task.add_done_callback(_background_done)
    return task


async def drain_notifications() -> None:
    """Wait for every notification scheduled on this loop; used at shutdown and in tests."""
    loop = asyncio.get_running_loop()
    pending = [task for task in _background if task.get_loop() is loop]
    while pending:
        await asyncio.gather(*pending, return_exceptions=True)
        pending = [task for task in _background if task.get_loop() is loop and not task.done()]


__all__ = [
    "NotificationDispatcher",
    "drain_notifications",
    "notify",
    "notify_in_background",
    "redact_email",
]
