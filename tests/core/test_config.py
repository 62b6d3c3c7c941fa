# tests/core/test_config.py
"""Unit tests for settings and the startup security check"""
import pytest

from shopguard.core.config import DEV_COOKIE_SECRET, validate_security_settings
from shopguard.core.exceptions import ConfigurationError
from shopguard.core.security.headers import get_security_headers


@pytest.mark.unit
class TestSecuritySettings:

    def test_strong_secret_is_production_grade(self, test_settings):
        assert validate_security_settings(test_settings) is True

    def test_default_secret_is_fatal_in_production(self, make_settings):
        config = make_settings(ENVIRONMENT="production", COOKIE_SECRET=DEV_COOKIE_SECRET)
        with pytest.raises(ConfigurationError) as exc_info:
            validate_security_settings(config)
        assert exc_info.value.component == "cookies"

    def test_short_secret_is_fatal_in_production(self, make_settings):
        config = make_settings(ENVIRONMENT="production", COOKIE_SECRET="short")
        with pytest.raises(ConfigurationError, match="at least 32 characters"):
            validate_security_settings(config)

    def test_weak_secret_only_warns_in_development(self, make_settings):
        config = make_settings(COOKIE_SECRET=DEV_COOKIE_SECRET)
        assert validate_security_settings(config) is False

    def test_cookie_secrets_order(self, make_settings):
        config = make_settings(COOKIE_SECRET_FALLBACKS=["old-secret-1", "old-secret-2"])
        assert config.cookie_secrets[0] == config.COOKIE_SECRET
        assert config.cookie_secrets[1:] == ["old-secret-1", "old-secret-2"]

    def test_environment_flags(self, make_settings):
        assert make_settings(ENVIRONMENT="Production").is_production
        assert make_settings().is_development


@pytest.mark.unit
class TestSecurityHeaders:

    def test_baseline_headers(self, test_settings):
        headers = get_security_headers(test_settings)

        assert headers["X-Frame-Options"] == "DENY"
        assert headers["X-Content-Type-Options"] == "nosniff"
        assert headers["Content-Security-Policy"].startswith("default-src 'self'")
        assert "Strict-Transport-Security" not in headers

    def test_hsts_in_production(self, make_settings):
        headers = get_security_headers(make_settings(ENVIRONMENT="production"))
        assert headers["Strict-Transport-Security"] == "max-age=31536000; includeSubDomains"
