from __future__ import annotations

import pytest

from app.core.config import AppEnv, Settings, load_settings

_ENV_VARS = (
    "APP_ENV",
    "LOG_LEVEL",
    "LOG_JSON",
    "PORT",
    "REDIS_URL",
    "STATE_FILE",
    "PUBLIC_ORIGIN",
    "RELAY_PATH",
    "DELIVERY_MODE",
    "HTTP_TIMEOUT_SECONDS",
    "CLIENT_NAME",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


# ---- valid values ----


def test_load_settings_defaults() -> None:
    settings = load_settings()
    assert settings.app_env == "dev"
    assert settings.log_level == "info"
    assert settings.log_json is False
    assert settings.port == 8000
    assert settings.redis_url is None
    assert settings.state_file is None
    assert settings.public_origin == "http://localhost:8000"
    assert settings.relay_path == "/api/proxy"
    assert settings.delivery_mode == "relay"
    assert settings.http_timeout_seconds == 30.0
    assert settings.client_name == "OAuth Flow Debugger"


def test_load_settings_respects_env_vars(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_ENV", "prod")
    monkeypatch.setenv("LOG_LEVEL", "error")
    monkeypatch.setenv("LOG_JSON", "1")
    monkeypatch.setenv("STATE_FILE", "/var/lib/flows.json")
    monkeypatch.setenv("DELIVERY_MODE", "direct")
    monkeypatch.setenv("HTTP_TIMEOUT_SECONDS", "2.5")
    settings = load_settings()
    assert settings.app_env == "prod"
    assert settings.log_level == "error"
    assert settings.log_json is True
    assert settings.state_file == "/var/lib/flows.json"
    assert settings.delivery_mode == "direct"
    assert settings.http_timeout_seconds == 2.5


def test_load_settings_normalizes_case(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_ENV", "PROD")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("DELIVERY_MODE", "Direct")
    settings = load_settings()
    assert settings.app_env == "prod"
    assert settings.log_level == "debug"
    assert settings.delivery_mode == "direct"


def test_load_settings_strips_whitespace(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_ENV", "  test  ")
    monkeypatch.setenv("LOG_LEVEL", "  warning  ")
    settings = load_settings()
    assert settings.app_env == "test"
    assert settings.log_level == "warning"


def test_public_origin_drops_trailing_slash(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PUBLIC_ORIGIN", "https://debugger.example.com/")
    settings = load_settings()
    assert settings.public_origin == "https://debugger.example.com"
    assert settings.redirect_uri == "https://debugger.example.com/callback"
    assert settings.relay_url == "https://debugger.example.com/api/proxy"


def test_default_origin_follows_port(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PORT", "9001")
    assert load_settings().public_origin == "http://localhost:9001"


# ---- invalid values ----


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("APP_ENV", "staging", "APP_ENV must be dev|test|prod"),
        ("APP_ENV", "", "APP_ENV must be dev|test|prod"),
        ("LOG_LEVEL", "verbose", "LOG_LEVEL must be debug|info|warning|error"),
        ("LOG_JSON", "yes", "LOG_JSON must be true|false"),
        ("DELIVERY_MODE", "proxy", "DELIVERY_MODE must be direct|relay"),
        ("PORT", "eighty", "PORT must be an integer"),
        ("HTTP_TIMEOUT_SECONDS", "soon", "HTTP_TIMEOUT_SECONDS must be a number"),
        ("HTTP_TIMEOUT_SECONDS", "0", "HTTP_TIMEOUT_SECONDS must be positive"),
        ("PUBLIC_ORIGIN", "localhost:8000", "PUBLIC_ORIGIN must be an http"),
        ("RELAY_PATH", "api/proxy", "RELAY_PATH must start with"),
    ],
)
def test_load_settings_rejects_invalid_values(
    monkeypatch: pytest.MonkeyPatch, name: str, value: str, message: str
) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=message.replace("|", r"\|")):
        load_settings()


# ---- Settings properties ----


def _make_settings(app_env: AppEnv = "dev") -> Settings:
    return Settings(  # type: ignore[arg-type]
        app_env=app_env,
        log_level="info",
        log_json=False,
        port=8000,
        redis_url=None,
        state_file=None,
        public_origin="http://localhost:8000",
        relay_path="/api/proxy",
        delivery_mode="relay",
        http_timeout_seconds=30.0,
        client_name="OAuth Flow Debugger",
    )


def test_settings_is_dev() -> None:
    s = _make_settings("dev")
    assert s.is_dev is True
    assert s.is_test is False
    assert s.is_prod is False


def test_settings_is_prod() -> None:
    s = _make_settings("prod")
    assert s.is_dev is False
    assert s.is_test is False
    assert s.is_prod is True


def test_settings_is_frozen() -> None:
    s = _make_settings()
    with pytest.raises(AttributeError):
        s.app_env = "prod"  # type: ignore[misc]
