import pytest
from pydantic import ValidationError

from foodhistory.config import DEFAULT_REMEMBER_ME_MAX_AGE, Settings, get_settings, reset_settings_cache


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.remember_me_cookie_name == "food-history-remember-me"
        assert settings.remember_me_max_age_seconds == DEFAULT_REMEMBER_ME_MAX_AGE == 2592000
        assert settings.remember_me_max_idle_days is None
        assert settings.admin_email is None

    def test_from_env_reads_declared_variables(self, monkeypatch):
        monkeypatch.setenv("ADMIN_EMAIL", "  boss@x.com ")
        monkeypatch.setenv("REMEMBER_ME_MAX_IDLE_DAYS", "30")
        monkeypatch.setenv("REMEMBER_ME_COOKIE_SAMESITE", "Strict")
        settings = Settings.from_env()
        assert settings.admin_email == "boss@x.com"
        assert settings.remember_me_max_idle_days == 30
        assert settings.remember_me_cookie_samesite == "strict"

    def test_blank_values_disable_optional_settings(self, monkeypatch):
        monkeypatch.setenv("ADMIN_EMAIL", "   ")
        monkeypatch.setenv("REMEMBER_ME_MAX_IDLE_DAYS", "")
        settings = Settings.from_env()
        assert settings.admin_email is None
        assert settings.remember_me_max_idle_days is None

    def test_non_positive_max_age_rejected(self):
        with pytest.raises(ValidationError):
            Settings(remember_me_max_age_seconds=0)

    def test_settings_are_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("ADMIN_EMAIL", "changed@x.com")
        reset_settings_cache()
        assert get_settings().admin_email == "changed@x.com"
