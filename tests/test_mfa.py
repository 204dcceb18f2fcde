"""Tests for TOTP enrollment, login verification and backup codes."""

import base64

import pytest

from conftest import STRONG_PASSWORD
from storeguard.service.audit import AuditAction
from storeguard.service.errors import (
    AccountLockedError,
    ConflictError,
    InvalidCodeError,
    InvalidCredentialsError,
    InvalidPasswordError,
)
from storeguard.service.mfa import (
    build_otpauth_uri,
    generate_backup_code,
    generate_totp,
    generate_totp_secret,
    normalize_backup_code,
    verify_totp,
)


def _code(secret, clock, offset_seconds=0):
    return generate_totp(secret, clock().timestamp() + offset_seconds)


def _wrong_code(secret, clock):
    valid = {_code(secret, clock, offset) for offset in (-30, 0, 30)}
    return next(code for code in ("000000", "111111", "222222", "333333") if code not in valid)


def _enable(mfa, account, clock):
    enrollment = mfa.enroll(account.id)
    mfa.verify_setup(account.id, _code(enrollment["secret"], clock))
    return enrollment


class TestTotpPrimitives:
    """RFC 6238 behaviour of the module-level helpers."""

    def test_rfc6238_sha1_vector(self):
        # RFC 6238 appendix B seed "12345678901234567890", 6-digit truncation
        secret = base64.b32encode(b"12345678901234567890").decode()
        assert generate_totp(secret, 59) == "287082"
        assert generate_totp(secret, 1111111109) == "081804"

    def test_secret_is_160_bits_of_base32(self):
        secret = generate_totp_secret()
        assert len(secret) == 32
        assert len(base64.b32decode(secret)) == 20

    def test_window_accepts_adjacent_steps_only(self):
        secret = generate_totp_secret()
        now = 1_700_000_000
        assert verify_totp(secret, generate_totp(secret, now - 30), now)
        assert verify_totp(secret, generate_totp(secret, now + 30), now)
        assert not verify_totp(secret, generate_totp(secret, now - 90), now)

    def test_otpauth_uri_carries_issuer_and_account(self):
        uri = build_otpauth_uri("ABCDEF", "a@x.com", "StormCom")
        assert uri.startswith("otpauth://totp/StormCom:a@x.com?")
        assert "secret=ABCDEF" in uri
        assert "issuer=StormCom" in uri

    def test_backup_code_format(self):
        code = generate_backup_code()
        assert len(code) == 11 and code[5] == "-"
        assert normalize_backup_code(code.lower()) == code.replace("-", "")


class TestEnrollment:
    """Enroll then confirm with a first code."""

    def test_enroll_returns_secret_qr_and_codes(self, mfa, make_account, store):
        account = make_account()
        enrollment = mfa.enroll(account.id)
        assert enrollment["qr_code_url"].startswith("data:image/png;base64,")
        assert len(enrollment["backup_codes"]) == 10
        stored = store.get_account(account.id)
        assert stored.mfa_enabled is False
        assert stored.mfa_secret == enrollment["secret"]

    def test_secret_is_encrypted_at_rest(self, mfa, make_account, store):
        account = make_account()
        enrollment = mfa.enroll(account.id)
        raw = store.accounts[account.id].mfa_secret
        assert raw != enrollment["secret"]

    def test_setup_with_valid_code_enables(self, mfa, make_account, store, clock, audit):
        account = make_account()
        enrollment = mfa.enroll(account.id)
        with pytest.raises(InvalidCodeError):
            mfa.verify_setup(account.id, _wrong_code(enrollment["secret"], clock))
        mfa.verify_setup(account.id, _code(enrollment["secret"], clock))
        enabled = store.get_account(account.id)
        assert enabled.mfa_enabled is True
        assert enabled.failed_login_attempts == 0
        assert AuditAction.MFA_ENABLED in audit.actions()

    def test_setup_with_wrong_code_counts_as_failure(self, mfa, make_account, store):
        account = make_account()
        mfa.enroll(account.id)
        with pytest.raises(InvalidCodeError):
            mfa.verify_setup(account.id, "000000")
        assert store.get_account(account.id).mfa_enabled is False
        assert store.get_account(account.id).failed_login_attempts == 1

    def test_enroll_twice_after_enable_conflicts(self, mfa, make_account, clock):
        account = make_account()
        _enable(mfa, account, clock)
        with pytest.raises(ConflictError):
            mfa.enroll(account.id)


class TestLoginVerification:
    """Second-factor checks after a password login."""

    def test_totp_code_verifies(self, mfa, make_account, clock):
        account = make_account()
        enrollment = _enable(mfa, account, clock)
        clock.advance(minutes=5)
        result = mfa.verify_login(account.id, _code(enrollment["secret"], clock))
        assert result == {"success": True, "method": "totp"}

    def test_backup_code_is_single_use(self, mfa, make_account, clock):
        account = make_account()
        enrollment = _enable(mfa, account, clock)
        code = enrollment["backup_codes"][0]
        result = mfa.verify_login(account.id, code.lower())
        assert result["method"] == "backup_code"
        assert result["remaining_backup_codes"] == 9
        with pytest.raises(InvalidCodeError):
            mfa.verify_login(account.id, code)

    def test_expired_backup_codes_are_refused(self, mfa, make_account, clock):
        account = make_account()
        enrollment = _enable(mfa, account, clock)
        clock.advance(days=91)
        with pytest.raises(InvalidCodeError):
            mfa.verify_login(account.id, enrollment["backup_codes"][0])

    def test_mfa_failures_share_the_password_lockout(
        self, mfa, credentials, make_account, clock
    ):
        account = make_account()
        _enable(mfa, account, clock)
        with pytest.raises(InvalidCredentialsError):
            credentials.validate("a@x.com", "Wr0ng!Password")
        with pytest.raises(InvalidCredentialsError):
            credentials.validate("a@x.com", "Wr0ng!Password")
        for _ in range(3):
            with pytest.raises(InvalidCodeError):
                mfa.verify_login(account.id, "000000")
        with pytest.raises(AccountLockedError):
            mfa.verify_login(account.id, "000000")
        with pytest.raises(AccountLockedError):
            credentials.validate("a@x.com", STRONG_PASSWORD)

    def test_password_login_does_not_clear_mfa_failures(
        self, mfa, credentials, make_account, store, clock
    ):
        account = make_account()
        enrollment = _enable(mfa, account, clock)
        wrong = _wrong_code(enrollment["secret"], clock)
        for round_number in range(5):
            signed_in = credentials.validate("a@x.com", STRONG_PASSWORD)
            assert signed_in.failed_login_attempts == round_number
            with pytest.raises(InvalidCodeError):
                mfa.verify_login(account.id, wrong)
        locked = store.get_account(account.id)
        assert locked.failed_login_attempts == 5
        assert locked.locked_until is not None
        with pytest.raises(AccountLockedError):
            credentials.validate("a@x.com", STRONG_PASSWORD)

    def test_second_factor_success_clears_the_counter(
        self, mfa, credentials, make_account, store, clock
    ):
        account = make_account()
        enrollment = _enable(mfa, account, clock)
        credentials.validate("a@x.com", STRONG_PASSWORD)
        for _ in range(2):
            with pytest.raises(InvalidCodeError):
                mfa.verify_login(account.id, _wrong_code(enrollment["secret"], clock))
        signed_in = credentials.validate("a@x.com", STRONG_PASSWORD)
        assert signed_in.failed_login_attempts == 2
        assert signed_in.last_login_at == clock()
        mfa.verify_login(account.id, _code(enrollment["secret"], clock))
        assert store.get_account(account.id).failed_login_attempts == 0

    def test_verify_login_without_mfa_is_refused(self, mfa, make_account):
        account = make_account()
        with pytest.raises(InvalidCodeError):
            mfa.verify_login(account.id, "123456")


class TestBackupCodeManagement:
    def test_regenerate_replaces_the_batch(self, mfa, make_account, clock):
        account = make_account()
        enrollment = _enable(mfa, account, clock)
        fresh = mfa.regenerate_backup_codes(account.id, STRONG_PASSWORD)
        assert set(fresh).isdisjoint(enrollment["backup_codes"])
        with pytest.raises(InvalidCodeError):
            mfa.verify_login(account.id, enrollment["backup_codes"][0])
        assert mfa.verify_login(account.id, fresh[0])["method"] == "backup_code"

    def test_regenerate_requires_password(self, mfa, make_account, clock):
        account = make_account()
        _enable(mfa, account, clock)
        with pytest.raises(InvalidPasswordError):
            mfa.regenerate_backup_codes(account.id, "Wr0ng!Password")

    def test_status_reports_remaining_codes(self, mfa, make_account, clock):
        account = make_account()
        enrollment = _enable(mfa, account, clock)
        mfa.verify_login(account.id, enrollment["backup_codes"][1])
        status = mfa.status(account.id)
        assert status["enabled"] is True
        assert status["backup_codes_remaining"] == 9
        assert status["backup_codes_total"] == 10

    def test_disable_clears_secret_and_codes(self, mfa, make_account, store, clock):
        account = make_account()
        _enable(mfa, account, clock)
        assert mfa.disable(account.id, STRONG_PASSWORD) is True
        stored = store.get_account(account.id)
        assert stored.mfa_enabled is False and stored.mfa_secret is None
        assert store.count_backup_codes(account.id, clock()) == (0, 0)
