"""Tests for core/config.py -- SECRET_KEY policy and the settings singleton."""

from __future__ import annotations

import pytest

from conftest import TEST_SECRET
from core.config import Settings, get_settings


class TestSecretKeyPolicy:
    def test_debug_generates_key(self):
        settings = Settings(debug=True, secret_key="")
        assert len(settings.secret_key) >= 32

    def test_production_requires_key(self):
        with pytest.raises(ValueError, match="SECRET_KEY is required"):
            Settings(debug=False, secret_key="")

    @pytest.mark.parametrize("debug", [True, False])
    def test_short_key_rejected(self, debug):
        with pytest.raises(ValueError, match="at least 32 characters"):
            Settings(debug=debug, secret_key="short-key")

    def test_explicit_key_kept(self):
        assert Settings(debug=False, secret_key=TEST_SECRET).secret_key == TEST_SECRET


class TestDefaults:
    def test_lifetimes(self):
        settings = Settings(secret_key=TEST_SECRET)
        assert settings.email_token_ttl_hours == 48
        assert settings.phone_code_ttl_minutes == 15
        assert settings.phone_max_attempts == 5
        assert settings.password_reset_ttl_minutes == 60

    def test_non_positive_lifetime_rejected(self):
        with pytest.raises(ValueError):
            Settings(secret_key=TEST_SECRET, token_lifetime_seconds=0)


class TestGetSettings:
    def test_cached_until_cleared(self, monkeypatch):
        monkeypatch.setenv("SECRET_KEY", TEST_SECRET)
        get_settings.cache_clear()
        try:
            first = get_settings()
            assert get_settings() is first
            assert first.secret_key == TEST_SECRET
            monkeypatch.setenv("PHONE_MAX_ATTEMPTS", "3")
            assert get_settings().phone_max_attempts == 5
            get_settings.cache_clear()
            assert get_settings().phone_max_attempts == 3
        finally:
            get_settings.cache_clear()
