"""Tests for the password reset request/complete flow."""

import time
from datetime import timedelta
from unittest import mock

import pytest

from conftest import STRONG_PASSWORD
from storeguard.service.audit import AuditAction
from storeguard.service.errors import (
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    PasswordReusedError,
    ValidationError,
)
from storeguard.service.notifications import drain_notifications
from storeguard.service.password_reset import PasswordResetFlow

NEW_PASSWORD = "N3w!Password99"


@pytest.fixture
def notifier():
    dispatcher = mock.Mock()
    dispatcher.send_password_reset.return_value = True
    dispatcher.send_password_changed.return_value = True
    return dispatcher


@pytest.fixture
def resets(store, hasher, history, sessions, audit, notifier, clock):
    return PasswordResetFlow(
        store,
        hasher,
        history,
        sessions=sessions,
        audit=audit,
        notifier=notifier,
        token_ttl=timedelta(hours=1),
        clock=clock,
    )


def _sent_token(notifier):
    args, _kwargs = notifier.send_password_reset.call_args
    return args[1]


async def _request_token(resets, notifier, email="a@x.com"):
    await resets.request(email)
    await drain_notifications()
    return _sent_token(notifier)


class TestRequest:
    """Requesting a reset never reveals whether the email exists."""

    async def test_known_and_unknown_emails_get_identical_results(
        self, resets, make_account, notifier
    ):
        make_account()
        known = await resets.request("a@x.com")
        unknown = await resets.request("missing@x.com")
        assert known == unknown == {"success": True}
        await drain_notifications()
        notifier.send_password_reset.assert_called_once()

    async def test_token_is_stored_with_expiry(self, resets, make_account, notifier, store, clock):
        account = make_account()
        token = await _request_token(resets, notifier, "A@x.com")
        assert len(token) == 64
        stored = store.get_account(account.id)
        assert stored.reset_token == token
        assert stored.reset_expires == clock() + timedelta(hours=1)

    async def test_delivery_failure_still_reports_success(
        self, resets, make_account, notifier
    ):
        make_account()
        notifier.send_password_reset.side_effect = RuntimeError("smtp down")
        assert await resets.request("a@x.com") == {"success": True}
        await drain_notifications()
        notifier.send_password_reset.assert_called_once()

    async def test_slow_delivery_does_not_delay_the_reply(
        self, resets, make_account, notifier
    ):
        make_account()

        def _slow_send(*_args, **_kwargs):
            time.sleep(0.5)
            return True

        notifier.send_password_reset.side_effect = _slow_send

        started = time.perf_counter()
        known = await resets.request("a@x.com")
        known_elapsed = time.perf_counter() - started

        started = time.perf_counter()
        unknown = await resets.request("missing@x.com")
        unknown_elapsed = time.perf_counter() - started

        assert known == unknown
        assert known_elapsed < 0.25
        assert abs(known_elapsed - unknown_elapsed) < 0.25
        await drain_notifications()
        notifier.send_password_reset.assert_called_once()


class TestReset:
    """Completing a reset consumes the token exactly once."""

    async def test_reset_sets_password_and_consumes_token(
        self, resets, make_account, notifier, store, hasher, audit
    ):
        account = make_account()
        token = await _request_token(resets, notifier)

        assert resets.validate_token(token)["valid"] is True
        await resets.reset(token, NEW_PASSWORD)

        updated = store.get_account(account.id)
        assert hasher.verify(NEW_PASSWORD, updated.password_hash)
        assert updated.reset_token is None
        assert resets.validate_token(token) == {"valid": False}
        with pytest.raises(InvalidOrExpiredTokenError):
            await resets.reset(token, "An0ther!Password")
        assert AuditAction.PASSWORD_RESET_COMPLETED in audit.actions()
        notifier.send_password_changed.assert_called_once_with("a@x.com")

    async def test_expired_token_is_rejected(self, resets, make_account, notifier, clock):
        make_account()
        token = await _request_token(resets, notifier)
        clock.advance(hours=1)
        with pytest.raises(InvalidOrExpiredTokenError):
            await resets.reset(token, NEW_PASSWORD)

    async def test_reused_password_keeps_token_valid(self, resets, make_account, notifier):
        make_account()
        token = await _request_token(resets, notifier)
        with pytest.raises(PasswordReusedError):
            await resets.reset(token, STRONG_PASSWORD)
        assert resets.validate_token(token)["valid"] is True
        await resets.reset(token, NEW_PASSWORD)

    async def test_weak_password_is_rejected_before_token_lookup(self, resets):
        with pytest.raises(ValidationError):
            await resets.reset("not-a-token", "weak")

    async def test_reset_revokes_every_session(
        self, resets, make_account, notifier, sessions
    ):
        account = make_account()
        for _ in range(2):
            await sessions.create(account.id, account.email, account.role, None, True)
        await resets.reset(await _request_token(resets, notifier), NEW_PASSWORD)
        assert await sessions.list_sessions(account.id) == []

    async def test_reset_clears_lockout(self, resets, make_account, notifier, store, credentials):
        account = make_account()
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                credentials.validate("a@x.com", "Wr0ng!Password")
        assert store.get_account(account.id).locked_until is not None
        await resets.reset(await _request_token(resets, notifier), NEW_PASSWORD)
        assert credentials.validate("a@x.com", NEW_PASSWORD).id == account.id
