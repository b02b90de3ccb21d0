from datetime import timedelta

import pytest
from pydantic import ValidationError

from sessionvault.config import AppEnv, Settings, get_settings, parse_duration, reset_settings_cache

STRONG_ACCESS = "k3Jr9vX2pQ8mZ4tL7wN1bY6hC5sD0fGa"
STRONG_REFRESH = "Qe8Tn2Vb6Xc1Mz7Lk4Jh9Gf3Ds5Ap0Wr"


class TestParseDuration:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("45s", timedelta(seconds=45)),
            ("15m", timedelta(minutes=15)),
            ("12h", timedelta(hours=12)),
            ("7d", timedelta(days=7)),
            ("90", timedelta(seconds=90)),
            (300, timedelta(seconds=300)),
            (timedelta(minutes=2), timedelta(minutes=2)),
        ],
    )
    def test_valid(self, raw, expected):
        assert parse_duration(raw) == expected

    @pytest.mark.parametrize("raw", ["", "abc", "15x", "-5m", "0s", 0, True, None])
    def test_invalid(self, raw):
        with pytest.raises(ValueError):
            parse_duration(raw)


class TestSettings:
    def test_durations_parsed_once(self):
        settings = Settings(
            jwt_access_secret=STRONG_ACCESS,
            jwt_refresh_secret=STRONG_REFRESH,
            access_token_ttl="10m",
            refresh_token_ttl="2d",
        )

        assert settings.access_token_ttl_seconds == 600
        assert settings.refresh_token_ttl_seconds == 2 * 24 * 3600
        assert settings.session_timeout_seconds == 7 * 24 * 3600

    def test_invalid_duration_fails_startup(self):
        with pytest.raises(ValidationError):
            Settings(
                jwt_access_secret=STRONG_ACCESS,
                jwt_refresh_secret=STRONG_REFRESH,
                access_token_ttl="soon",
            )

    def test_secrets_must_differ(self):
        with pytest.raises(ValidationError):
            Settings(jwt_access_secret=STRONG_ACCESS, jwt_refresh_secret=STRONG_ACCESS)

    def test_missing_secrets_generated_outside_production(self):
        settings = Settings()

        assert settings.jwt_access_secret
        assert settings.jwt_refresh_secret
        assert settings.jwt_access_secret != settings.jwt_refresh_secret

    def test_production_requires_secrets(self):
        with pytest.raises(ValidationError):
            Settings(app_env="production")

    def test_production_rejects_short_secret(self):
        with pytest.raises(ValidationError):
            Settings(app_env="production", jwt_access_secret="short", jwt_refresh_secret=STRONG_REFRESH)

    def test_production_rejects_placeholder_secret(self):
        with pytest.raises(ValidationError):
            Settings(
                app_env="production",
                jwt_access_secret="dev-jwt-secret-change-this-in-production",
                jwt_refresh_secret=STRONG_REFRESH,
            )

    def test_production_accepts_strong_secrets(self):
        settings = Settings(
            app_env="production",
            jwt_access_secret=STRONG_ACCESS,
            jwt_refresh_secret=STRONG_REFRESH,
        )

        assert settings.app_env is AppEnv.PRODUCTION

    def test_retry_attempts_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(
                jwt_access_secret=STRONG_ACCESS,
                jwt_refresh_secret=STRONG_REFRESH,
                store_retry_attempts=0,
            )


class TestFromEnv:
    def test_reads_documented_variables(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", STRONG_ACCESS)
        monkeypatch.setenv("JWT_REFRESH_SECRET", STRONG_REFRESH)
        monkeypatch.setenv("JWT_EXPIRES_IN", "5m")
        monkeypatch.setenv("JWT_REFRESH_EXPIRES_IN", "1d")
        monkeypatch.setenv("SESSION_TIMEOUT", "1d")
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/2")
        monkeypatch.setenv("STORE_RETRY_ATTEMPTS", "5")

        settings = Settings.from_env()

        assert settings.jwt_access_secret == STRONG_ACCESS
        assert settings.access_token_ttl == timedelta(minutes=5)
        assert settings.refresh_token_ttl == timedelta(days=1)
        assert settings.redis_url == "redis://cache:6379/2"
        assert settings.store_retry_attempts == 5

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", STRONG_ACCESS)
        monkeypatch.setenv("JWT_REFRESH_SECRET", STRONG_REFRESH)

        first = get_settings()
        assert get_settings() is first

        reset_settings_cache()
        assert get_settings() is not first
