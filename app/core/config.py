from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal
from urllib.parse import urlsplit

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]
DeliveryMode = Literal["direct", "relay"]


def _getenv(name: str, default: str) -> str:
    # Centralize env access so it’s easy to extend later (type casting, required vars)
    return os.environ.get(name, default).strip()


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    redis_url: str | None
    state_file: str | None
    public_origin: str
    relay_path: str
    delivery_mode: DeliveryMode
    http_timeout_seconds: float
    client_name: str

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"

    @property
    def redirect_uri(self) -> str:
        """Where the authorization server sends the browser back to."""
        return f"{self.public_origin}/callback"

    @property
    def relay_url(self) -> str:
        return f"{self.public_origin}{self.relay_path}"


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    log_json_raw = _getenv("LOG_JSON", "false").lower()
    port_raw = _getenv("PORT", "8000")
    delivery_mode_raw = _getenv("DELIVERY_MODE", "relay").lower()
    timeout_raw = _getenv("HTTP_TIMEOUT_SECONDS", "30")

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    if log_json_raw not in ("true", "false", "1", "0"):
        raise ValueError(f"LOG_JSON must be true|false (got {log_json_raw!r})")

    if delivery_mode_raw not in ("direct", "relay"):
        raise ValueError(
            f"DELIVERY_MODE must be direct|relay (got {delivery_mode_raw!r})"
        )

    try:
        port = int(port_raw)
    except ValueError:
        raise ValueError(f"PORT must be an integer (got {port_raw!r})") from None

    try:
        http_timeout = float(timeout_raw)
    except ValueError:
        raise ValueError(
            f"HTTP_TIMEOUT_SECONDS must be a number (got {timeout_raw!r})"
        ) from None
    if http_timeout <= 0:
        raise ValueError(f"HTTP_TIMEOUT_SECONDS must be positive (got {timeout_raw!r})")

    public_origin = _getenv("PUBLIC_ORIGIN", f"http://localhost:{port}").rstrip("/")
    parts = urlsplit(public_origin)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValueError(f"PUBLIC_ORIGIN must be an http(s) origin (got {public_origin!r})")

    relay_path = _getenv("RELAY_PATH", "/api/proxy")
    if not relay_path.startswith("/"):
        raise ValueError(f"RELAY_PATH must start with '/' (got {relay_path!r})")

    redis_url = _getenv("REDIS_URL", "") or None
    state_file = _getenv("STATE_FILE", "") or None

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=log_json_raw in ("true", "1"),
        port=port,
        redis_url=redis_url,
        state_file=state_file,
        public_origin=public_origin,
        relay_path=relay_path,
        delivery_mode=delivery_mode_raw,
        http_timeout_seconds=http_timeout,
        client_name=_getenv("CLIENT_NAME", "OAuth Flow Debugger"),
    )


# Optional: module-level singleton so imports are cheap
SETTINGS = load_settings()
