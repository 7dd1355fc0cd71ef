import pytest

from savvyshield.config.settings import DEFAULT_WEBHOOK_SECRET, Settings


def _set_required_env(monkeypatch) -> None:
    monkeypatch.setenv("API_TOKEN", "test-api")
    monkeypatch.setenv("ADMIN_TOKEN", "test-admin")
    monkeypatch.setenv("METRICS_TOKEN", "test-metrics")
    monkeypatch.setenv("WEBHOOK_SECRET", "test-webhook-secret")


def test_production_requires_security_settings(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    for key in ["API_TOKEN", "ADMIN_TOKEN", "METRICS_TOKEN", "WEBHOOK_SECRET"]:
        monkeypatch.delenv(key, raising=False)

    with pytest.raises(ValueError) as excinfo:
        Settings(_env_file=None)

    message = str(excinfo.value)
    assert "API_TOKEN" in message
    assert "ADMIN_TOKEN" in message
    assert "METRICS_TOKEN" in message
    assert "WEBHOOK_SECRET" in message


def test_production_rejects_default_webhook_secret(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    _set_required_env(monkeypatch)
    monkeypatch.setenv("WEBHOOK_SECRET", DEFAULT_WEBHOOK_SECRET)

    with pytest.raises(ValueError) as excinfo:
        Settings(_env_file=None)

    assert "WEBHOOK_SECRET" in str(excinfo.value)


def test_production_allows_with_required_settings(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    _set_required_env(monkeypatch)

    settings = Settings(_env_file=None)
    assert settings.app_env == "production"


def test_development_allows_open_routes(monkeypatch):
    monkeypatch.setenv("APP_ENV", "development")
    for key in ["API_TOKEN", "ADMIN_TOKEN", "METRICS_TOKEN", "WEBHOOK_SECRET"]:
        monkeypatch.delenv(key, raising=False)

    settings = Settings(_env_file=None)
    assert settings.api_token is None
    assert settings.webhook_secret == DEFAULT_WEBHOOK_SECRET


def test_storage_backend_validated(monkeypatch):
    monkeypatch.setenv("STORAGE_BACKEND", "mongodb")

    with pytest.raises(ValueError):
        Settings(_env_file=None)


def test_derived_lists(monkeypatch):
    monkeypatch.setenv("GAME_APPS", "gamesavvy, arcade ,")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "http://a.test,http://b.test")
    monkeypatch.setenv("POSTGRES_PASSWORD", "pw")

    settings = Settings(_env_file=None)
    assert settings.game_apps_set == {"gamesavvy", "arcade"}
    assert settings.cors_allow_origins_list == ["http://a.test", "http://b.test"]
    assert settings.postgres_url.startswith("postgresql+asyncpg://shield_user:pw@")
