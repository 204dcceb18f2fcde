"""Integration tests for the HTTP auth surface.

Covers registration, login and sessions, CSRF enforcement, MFA over HTTP,
password reset and the error envelope as seen by a client.
"""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from conftest import STRONG_PASSWORD
from storeguard import app as app_module
from storeguard.service.audit import AuditAction
from storeguard.service.mfa import generate_totp
from storeguard.service.runtime import get_runtime

NEW_PASSWORD = "N3w!Password99"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def user_email():
    return "shopper@example.com"


def _register(client, email, password=STRONG_PASSWORD):
    return client.post("/v1/register", json={"email": email, "password": password, "name": "Sam"})


def _login(client, email, password=STRONG_PASSWORD):
    return client.post("/v1/login", json={"email": email, "password": password})


def _csrf_headers(login_response):
    return {"X-CSRF-Token": login_response.json()["data"]["csrfToken"]}


class TestRegistration:
    def test_register_returns_201_and_user(self, client, user_email):
        response = _register(client, user_email)
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["user"]["email"] == user_email
        assert data["user"]["role"] == "CUSTOMER"
        assert data["verificationRequired"] is True
        assert "passwordHash" not in data["user"]

    def test_duplicate_registration_conflicts(self, client, user_email):
        _register(client, user_email)
        response = _register(client, user_email.upper())
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    def test_weak_password_is_a_validation_error(self, client, user_email):
        response = _register(client, user_email, password="password")
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "VALIDATION_ERROR"
        assert body["error"]["details"]["fields"]["password"]

    def test_malformed_email_is_a_validation_error(self, client):
        response = _register(client, "not-an-email")
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert "email" in body["error"]["details"]["fields"]

    def test_verify_email_with_stored_token(self, client, user_email):
        _register(client, user_email)
        token = get_runtime().store.get_account_by_email(user_email).verification_token
        response = client.post("/v1/verify-email", json={"token": token})
        assert response.status_code == 200
        assert response.json()["data"]["user"]["emailVerified"] is True
        again = client.post("/v1/verify-email", json={"token": token})
        assert again.json()["error"]["code"] == "INVALID_OR_EXPIRED_TOKEN"


class TestLoginAndSessions:
    def test_login_sets_cookies_and_session_is_readable(self, client, user_email):
        _register(client, user_email)
        response = _login(client, user_email)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["requiresMFA"] is False
        assert client.cookies.get("session_id")
        assert client.cookies.get("csrf_token") == data["csrfToken"]

        session = client.get("/v1/session")
        assert session.status_code == 200
        body = session.json()["data"]
        assert body["user"]["email"] == user_email
        assert len(body["session"]["id"]) == 8

    def test_unknown_email_and_wrong_password_look_identical(self, client, user_email):
        _register(client, user_email)
        unknown = _login(client, "nobody@example.com")
        wrong = _login(client, user_email, password="Wr0ng!Password")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"] == wrong.json()["error"]

    def test_lockout_after_repeated_failures(self, client, user_email):
        _register(client, user_email)
        for _ in range(5):
            assert _login(client, user_email, password="Wr0ng!Password").status_code == 401
        locked = _login(client, user_email)
        assert locked.status_code == 423
        assert locked.json()["error"]["code"] == "ACCOUNT_LOCKED"
        audit_log = get_runtime().audit_log
        assert AuditAction.ACCOUNT_LOCKED in audit_log.actions()

    def test_session_endpoint_requires_cookie(self, client):
        response = client.get("/v1/session")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    def test_logout_clears_session(self, client, user_email):
        _register(client, user_email)
        login = _login(client, user_email)
        response = client.post("/v1/logout", headers=_csrf_headers(login))
        assert response.status_code == 200
        assert client.get("/v1/session").status_code == 401

    def test_list_and_revoke_other_sessions(self, client, user_email):
        _register(client, user_email)
        other = TestClient(app_module.app)
        _login(other, user_email)
        login = _login(client, user_email)

        listed = client.get("/v1/sessions").json()["data"]["sessions"]
        assert len(listed) == 2
        assert sum(1 for item in listed if item["current"]) == 1

        revoked = client.post("/v1/sessions/revoke-all", headers=_csrf_headers(login))
        assert revoked.json()["data"]["revoked"] == 1
        assert other.get("/v1/session").status_code == 401
        assert client.get("/v1/session").status_code == 200

    def test_password_change_over_http(self, client, user_email):
        _register(client, user_email)
        login = _login(client, user_email)
        response = client.post(
            "/v1/password/change",
            json={"currentPassword": STRONG_PASSWORD, "newPassword": NEW_PASSWORD},
            headers=_csrf_headers(login),
        )
        assert response.status_code == 200
        assert client.get("/v1/session").status_code == 200
        assert _login(TestClient(app_module.app), user_email, NEW_PASSWORD).status_code == 200


class TestCsrfEnforcement:
    def test_state_change_without_token_is_rejected(self, client, user_email):
        _register(client, user_email)
        _login(client, user_email)
        response = client.post("/v1/logout")
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "CSRF_VALIDATION_FAILED"

    def test_mismatched_token_is_rejected(self, client, user_email):
        _register(client, user_email)
        _login(client, user_email)
        foreign = get_runtime().csrf.issue()
        response = client.post("/v1/logout", headers={"X-CSRF-Token": foreign})
        assert response.status_code == 403

    def test_form_field_token_is_accepted(self, client, user_email):
        _register(client, user_email)
        login = _login(client, user_email)
        response = client.post(
            "/v1/logout", data={"csrf_token": login.json()["data"]["csrfToken"]}
        )
        assert response.status_code == 200
        assert client.get("/v1/session").status_code == 401

    def test_form_field_with_foreign_token_is_rejected(self, client, user_email):
        _register(client, user_email)
        _login(client, user_email)
        response = client.post("/v1/logout", data={"csrf_token": get_runtime().csrf.issue()})
        assert response.status_code == 403
        assert client.get("/v1/session").status_code == 200

    def test_csrf_token_endpoint_issues_cookie(self, client):
        response = client.get("/v1/csrf-token")
        data = response.json()["data"]
        assert data["expiresIn"] == 24 * 3600
        assert client.cookies.get("csrf_token") == data["csrfToken"]

    def test_safe_methods_skip_csrf(self, client, user_email):
        _register(client, user_email)
        _login(client, user_email)
        assert client.get("/v1/sessions").status_code == 200


class TestMfaOverHttp:
    def _enable_mfa(self, client, user_email):
        _register(client, user_email)
        login = _login(client, user_email)
        headers = _csrf_headers(login)
        enrollment = client.post("/v1/mfa/enroll", headers=headers).json()["data"]
        assert enrollment["qrCodeUrl"].startswith("data:image/png;base64,")
        assert len(enrollment["backupCodes"]) == 10
        setup = client.post(
            "/v1/mfa/verify",
            json={"code": generate_totp(enrollment["secret"], time.time()), "type": "setup"},
            headers=headers,
        )
        assert setup.status_code == 200
        client.post("/v1/logout", headers=headers)
        return enrollment

    def test_login_with_mfa_gates_protected_routes(self, client, user_email):
        enrollment = self._enable_mfa(client, user_email)

        login = _login(client, user_email)
        assert login.json()["data"]["requiresMFA"] is True
        pending = client.get("/v1/sessions")
        assert pending.status_code == 401
        assert pending.json()["error"]["details"] == {"requiresMFA": True}
        assert client.get("/v1/session").json()["data"]["requiresMFA"] is True

        verified = client.post(
            "/v1/mfa/verify",
            json={"code": generate_totp(enrollment["secret"], time.time())},
            headers=_csrf_headers(login),
        )
        assert verified.status_code == 200
        assert verified.json()["data"]["method"] == "totp"
        assert client.get("/v1/sessions").status_code == 200

    def test_backup_code_login_reports_remaining(self, client, user_email):
        enrollment = self._enable_mfa(client, user_email)
        login = _login(client, user_email)
        verified = client.post(
            "/v1/mfa/verify",
            json={"code": enrollment["backupCodes"][0]},
            headers=_csrf_headers(login),
        )
        data = verified.json()["data"]
        assert data["method"] == "backup_code"
        assert data["remainingBackupCodes"] == 9

        status = client.get("/v1/mfa/status").json()["data"]
        assert status["enabled"] is True
        assert status["backupCodesRemaining"] == 9

    def test_mfa_calls_run_on_worker_threads(self, client, user_email, monkeypatch):
        mfa = get_runtime().mfa
        calls = []

        def _record_thread(method):
            def _wrapped(*args, **kwargs):
                try:
                    asyncio.get_running_loop()
                    on_loop = True
                except RuntimeError:
                    on_loop = False
                calls.append((method.__name__, on_loop))
                return method(*args, **kwargs)

            return _wrapped

        for name in ("verify_setup", "verify_login", "status"):
            monkeypatch.setattr(mfa, name, _record_thread(getattr(mfa, name)))

        enrollment = self._enable_mfa(client, user_email)
        login = _login(client, user_email)
        client.post(
            "/v1/mfa/verify",
            json={"code": generate_totp(enrollment["secret"], time.time())},
            headers=_csrf_headers(login),
        )
        assert client.get("/v1/mfa/status").status_code == 200
        assert calls == [
            ("verify_setup", False),
            ("verify_login", False),
            ("status", False),
        ]

    def test_wrong_code_is_rejected(self, client, user_email):
        self._enable_mfa(client, user_email)
        login = _login(client, user_email)
        response = client.post(
            "/v1/mfa/verify", json={"code": "000000"}, headers=_csrf_headers(login)
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_CODE"


class TestPasswordReset:
    def test_request_responses_do_not_reveal_accounts(self, client, user_email):
        _register(client, user_email)
        known = client.post("/v1/reset-password", json={"email": user_email})
        unknown = client.post("/v1/reset-password", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_complete_reset_and_login_with_new_password(self, client, user_email):
        _register(client, user_email)
        client.post("/v1/reset-password", json={"email": user_email})
        token = get_runtime().store.get_account_by_email(user_email).reset_token

        assert client.get("/v1/reset-password/validate", params={"token": token}).json()[
            "data"
        ] == {"valid": True}
        done = client.post(
            "/v1/reset-password", json={"token": token, "password": NEW_PASSWORD}
        )
        assert done.status_code == 200
        assert _login(client, user_email, NEW_PASSWORD).status_code == 200
        assert client.get("/v1/reset-password/validate", params={"token": token}).json()[
            "data"
        ] == {"valid": False}

    def test_reset_body_needs_exactly_one_form(self, client):
        response = client.post(
            "/v1/reset-password",
            json={"email": "a@example.com", "token": "t", "password": NEW_PASSWORD},
        )
        assert response.status_code == 400

    def test_repeated_requests_are_rate_limited(self, client, user_email):
        responses = [
            client.post("/v1/reset-password", json={"email": user_email}) for _ in range(6)
        ]
        assert [r.status_code for r in responses[:5]] == [200] * 5
        limited = responses[5]
        assert limited.status_code == 429
        assert limited.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
        assert int(limited.headers["Retry-After"]) >= 1


class TestEnvelopeAndHealth:
    def test_responses_carry_request_id_header(self, client):
        response = client.get("/v1/csrf-token", headers={"X-Request-ID": "req-abc"})
        assert response.headers["X-Request-ID"] == "req-abc"

    def test_security_headers_present(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/v1/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_healthz_reports_memory_store(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"
