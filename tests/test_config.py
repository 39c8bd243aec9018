import pytest
from pydantic import ValidationError

from jwtsessions.config import Settings, get_settings, reset_settings_cache


def test_defaults():
    settings = Settings(jwt_secret="s")

    assert settings.jwt_algorithm == "HS256"
    assert settings.access_token_ttl_seconds == 3600
    assert settings.refresh_token_ttl_seconds == 7 * 24 * 60 * 60
    assert settings.jwt_leeway_seconds == 0
    assert settings.jwt_issuer is None
    assert settings.persist_access_tokens is False
    assert settings.token_prefix == "jwt"


def test_missing_secret_is_generated():
    first = Settings()
    second = Settings()

    assert first.jwt_secret
    assert first.jwt_secret != second.jwt_secret


def test_algorithm_is_normalized():
    assert Settings(jwt_secret="s", jwt_algorithm="hs512").jwt_algorithm == "HS512"


def test_unknown_algorithm_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="s", jwt_algorithm="none")


@pytest.mark.parametrize(
    "field", ["jwt_leeway_seconds", "access_token_ttl_seconds", "refresh_token_ttl_seconds"]
)
def test_negative_durations_rejected(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret="s", **{field: -1})


def test_blank_issuer_is_none():
    assert Settings(jwt_secret="s", jwt_issuer="").jwt_issuer is None


def test_settings_are_frozen():
    settings = Settings(jwt_secret="s")

    with pytest.raises(ValidationError):
        settings.access_token_ttl_seconds = 5


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "120")
    monkeypatch.setenv("PERSIST_ACCESS_TOKENS", "true")
    monkeypatch.setenv("JWT_ISSUER", "issuer.test")

    settings = Settings.from_env()

    assert settings.access_token_ttl_seconds == 120
    assert settings.persist_access_tokens is True
    assert settings.jwt_issuer == "issuer.test"


def test_get_settings_is_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    monkeypatch.setenv("TOKEN_PREFIX", "other")

    assert get_settings() is first

    reset_settings_cache()
    assert get_settings().token_prefix == "other"
    reset_settings_cache()
