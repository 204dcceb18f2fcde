"""Tests for environment-driven settings and the structlog helpers."""

import pytest
from pydantic import ValidationError

from storeguard.config import Settings
from storeguard.logging import _redact_pii, sanitize_error_message, set_correlation_id


class TestSettings:
    def test_env_overrides_defaults(self, monkeypatch):
        monkeypatch.setenv("LOCKOUT_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")
        settings = Settings.from_env()
        assert settings.lockout_max_attempts == 7
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_blank_redis_url_disables_redis(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "")
        assert Settings.from_env().redis_url is None

    def test_short_csrf_secret_rejected(self, monkeypatch):
        monkeypatch.setenv("CSRF_SECRET", "too-short")
        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_non_positive_limits_rejected(self, monkeypatch):
        monkeypatch.setenv("LOCKOUT_MAX_ATTEMPTS", "0")
        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_generated_secret_is_persisted(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        monkeypatch.delenv("CSRF_SECRET", raising=False)
        first = Settings.from_env().csrf_secret
        second = Settings.from_env().csrf_secret
        assert first == second
        assert len(first) >= 32

    def test_session_max_age_seconds(self):
        assert Settings(session_max_age_hours=12).session_max_age_seconds == 12 * 3600


class TestLoggingHelpers:
    def test_pii_fields_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {"email": "someone@example.com", "password": "abc", "error_code": "X", "path": "/v1"},
        )
        assert event["email"] == "so***om"
        assert event["password"] == "***"
        assert event["error_code"] == "X"
        assert event["path"] == "/v1"

    def test_sanitize_strips_connection_strings_and_paths(self):
        message = sanitize_error_message(
            "could not reach postgresql://user:pw@db:5432/app from /srv/storeguard/app.py"
        )
        assert "postgresql://" not in message
        assert "/srv/storeguard" not in message

    def test_sanitize_caps_length_and_handles_empty(self):
        assert len(sanitize_error_message("x" * 1000)) == 500
        assert sanitize_error_message("") == "An error occurred"

    def test_correlation_id_generated_when_missing(self):
        assert set_correlation_id("req-1") == "req-1"
        assert len(set_correlation_id(None)) == 36
