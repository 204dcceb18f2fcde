"""Unit tests for the in-memory account store and shared storage helpers."""

import threading
from datetime import timedelta

import pytest

from storeguard.storage.common import MfaSecretCipher, normalize_ip_address, safe_row_value
from storeguard.storage.errors import ConstraintViolation
from storeguard.storage.models import AccountStatus, Role


def _create(store, clock, email="a@x.com", **kwargs):
    return store.create_account(email, "hash", now=clock(), **kwargs)


class TestAccounts:
    def test_create_defaults(self, store, clock):
        account = _create(store, clock)
        assert account.role == Role.CUSTOMER
        assert account.status == AccountStatus.ACTIVE
        assert account.failed_login_attempts == 0
        assert account.password_changed_at == clock()

    def test_email_is_unique_case_insensitively(self, store, clock):
        _create(store, clock, "Shop@X.com")
        with pytest.raises(ConstraintViolation):
            _create(store, clock, "shop@x.com")

    def test_returned_accounts_are_detached(self, store, clock):
        account = _create(store, clock)
        account.failed_login_attempts = 99
        assert store.get_account(account.id).failed_login_attempts == 0

    def test_deleted_status_stamps_deleted_at(self, store, clock):
        account = _create(store, clock)
        deleted = store.set_account_status(account.id, AccountStatus.DELETED, now=clock())
        assert deleted.deleted_at == clock()

    def test_missing_account_updates_return_none(self, store):
        assert store.update_account_role("missing", Role.STAFF) is None
        assert store.set_account_status("missing", AccountStatus.SUSPENDED) is None
        assert store.update_password_hash("missing", "h") is False


class TestLockoutCounter:
    def test_lock_set_when_threshold_reached(self, store, clock):
        account = _create(store, clock)
        until = clock() + timedelta(minutes=30)
        for _ in range(4):
            assert store.record_failed_login(account.id, clock(), 5, until).locked_until is None
        locked = store.record_failed_login(account.id, clock(), 5, until)
        assert locked.failed_login_attempts == 5
        assert locked.locked_until == until

    def test_concurrent_failures_are_all_counted(self, store, clock):
        account = _create(store, clock)
        until = clock() + timedelta(minutes=30)
        threads = [
            threading.Thread(
                target=store.record_failed_login, args=(account.id, clock(), 100, until)
            )
            for _ in range(50)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert store.get_account(account.id).failed_login_attempts == 50

    def test_successful_login_clears_counter(self, store, clock):
        account = _create(store, clock)
        store.record_failed_login(account.id, clock(), 1, clock() + timedelta(minutes=5))
        cleared = store.record_successful_login(account.id, clock(), " 10.0.0.1 ")
        assert cleared.failed_login_attempts == 0
        assert cleared.locked_until is None
        assert cleared.last_login_ip == "10.0.0.1"

    def test_login_stamp_can_leave_counter_armed(self, store, clock):
        account = _create(store, clock)
        store.record_failed_login(account.id, clock(), 5, clock() + timedelta(minutes=30))
        stamped = store.record_successful_login(
            account.id, clock(), "10.0.0.2", clear_lockout=False
        )
        assert stamped.failed_login_attempts == 1
        assert stamped.last_login_at == clock()
        assert stamped.last_login_ip == "10.0.0.2"


class TestTokens:
    def test_reset_token_consumed_once(self, store, clock):
        account = _create(store, clock)
        store.set_reset_token(account.id, "tok", clock() + timedelta(hours=1))
        assert store.consume_reset_token("tok", "new-hash", clock()).password_hash == "new-hash"
        assert store.consume_reset_token("tok", "other", clock()) is None

    def test_concurrent_reset_consumption_has_one_winner(self, store, clock):
        account = _create(store, clock)
        store.set_reset_token(account.id, "tok", clock() + timedelta(hours=1))
        winners = []
        lock = threading.Lock()

        def _consume(index):
            if store.consume_reset_token("tok", f"hash-{index}", clock()) is not None:
                with lock:
                    winners.append(index)

        threads = [threading.Thread(target=_consume, args=(i,)) for i in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert len(winners) == 1
        assert store.get_account(account.id).password_hash == f"hash-{winners[0]}"

    def test_reset_token_expiry_boundary(self, store, clock):
        account = _create(store, clock)
        store.set_reset_token(account.id, "tok", clock())
        assert store.consume_reset_token("tok", "h", clock()) is None

    def test_blank_tokens_never_match(self, store, clock):
        _create(store, clock)
        assert store.get_account_by_reset_token("") is None
        assert store.consume_verification_token("", clock()) is None


class TestPasswordHistory:
    def test_history_is_newest_first_and_trimmed(self, store, clock):
        for index in range(4):
            store.add_password_history("acct", f"h{index}", retain=3, now=clock.advance(minutes=1))
        entries = store.list_password_history("acct", 10)
        assert [entry.hashed_password for entry in entries] == ["h3", "h2", "h1"]


class TestBackupCodes:
    def test_codes_require_existing_account(self, store, clock):
        with pytest.raises(ConstraintViolation):
            store.replace_backup_codes("missing", ["x"], expires_at=clock(), now=clock())

    def test_consume_marks_used(self, store, clock):
        account = _create(store, clock)
        store.replace_backup_codes(
            account.id, ["c1", "c2"], expires_at=clock() + timedelta(days=90), now=clock()
        )
        assert store.consume_backup_code(account.id, "c1", clock()) is True
        assert store.consume_backup_code(account.id, "c1", clock()) is False
        assert store.count_backup_codes(account.id, clock()) == (1, 2)


class TestMfaSecretCipher:
    def test_round_trip_and_wrong_key(self):
        cipher = MfaSecretCipher("key-one")
        token = cipher.encrypt("JBSWY3DPEHPK3PXP")
        assert token != "JBSWY3DPEHPK3PXP"
        assert cipher.decrypt(token) == "JBSWY3DPEHPK3PXP"
        assert MfaSecretCipher("key-two").decrypt(token) is None

    def test_empty_values_pass_through(self):
        cipher = MfaSecretCipher("key")
        assert cipher.encrypt(None) is None
        assert cipher.decrypt("") is None

    def test_key_required(self):
        with pytest.raises(RuntimeError):
            MfaSecretCipher("")


class TestHelpers:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            (" 10.0.0.1 ", "10.0.0.1"),
            ("2001:db8::0001", "2001:db8::1"),
            ("", None),
            (None, None),
            ("not-an-ip", None),
        ],
    )
    def test_normalize_ip_address(self, raw, expected):
        assert normalize_ip_address(raw) == expected

    def test_safe_row_value(self):
        assert safe_row_value({"a": 1}, "a") == 1
        assert safe_row_value({"a": 1}, "b", default=2) == 2
        assert safe_row_value(None, "a") is None


class TestRedisHelpers:
    """Pure helpers of the Redis backend; no server needed."""

    def test_ttl_is_clamped_to_one_second(self, clock):
        from storeguard.storage.redis_cache import _ttl_seconds

        assert _ttl_seconds(clock() + timedelta(hours=12), clock()) == 12 * 3600
        assert _ttl_seconds(clock() - timedelta(minutes=5), clock()) == 1

    def test_session_records_round_trip_and_corrupt_records_read_as_missing(self, clock):
        import json

        from storeguard.storage.models import Session
        from storeguard.storage.redis_cache import RedisSessionStore

        session = Session(
            id="a" * 64,
            account_id="acct",
            email="a@x.com",
            role=Role.STAFF,
            tenant_id="store-1",
            mfa_verified=False,
            created_at=clock(),
            expires_at=clock() + timedelta(hours=12),
            last_accessed_at=clock(),
        )
        decoded = RedisSessionStore._decode(json.dumps(session.to_dict()))
        assert decoded.id == session.id
        assert decoded.role == Role.STAFF
        assert decoded.expires_at == session.expires_at
        assert RedisSessionStore._decode("{not json") is None
        assert RedisSessionStore._decode(json.dumps({"id": "x"})) is None
        assert RedisSessionStore._decode(None) is None

    def test_rate_keys_do_not_contain_emails(self):
        from storeguard.storage.redis_cache import RedisCache

        key = RedisCache._normalize_rate_key("login:a@x.com")
        assert key.startswith("rate:")
        assert "a@x.com" not in key
        assert key == RedisCache._normalize_rate_key("login:a@x.com")
