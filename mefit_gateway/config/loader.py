"""Env var config loading with pydantic-settings."""

from __future__ import annotations

import signal
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

from mefit_gateway.config.rate_limit_defaults import AUTH_RATE_LIMIT, GLOBAL_RATE_LIMIT, WINDOW_SECONDS

logger = structlog.get_logger()

_CONFIG_DIR = Path(__file__).parent
_ROUTES_PATH = _CONFIG_DIR / "routes.yaml"


def load_yaml_file(path: str | Path) -> dict[str, Any]:
    """Load a YAML config file, returning empty dict when it is missing."""
    path = Path(path)
    if not path.exists():
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


class GatewaySettings(BaseSettings):
    """Gateway configuration, overridden by MEFIT_* env vars."""

    model_config = SettingsConfigDict(
        env_prefix="MEFIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    upstream_url: str = "http://localhost:5000"
    listen_port: int = 8080
    environment: str = "development"
    log_level: str = "info"
    log_json: bool = True

    # Redis (rate limiting backend)
    redis_url: str = "redis://localhost:6379"
    redis_pool_size: int = 10

    # Proxy settings
    proxy_timeout: float = 30.0
    upstream_max_connections: int = 100
    upstream_max_keepalive: int = 20

    # Request body limit (10MB default)
    max_body_bytes: int = 10 * 1024 * 1024

    # Deepest nesting the sanitizer will walk before rejecting
    max_input_depth: int = 256

    # Rate limiting
    rate_limit_enabled: bool = True
    rate_limit_window_seconds: int = WINDOW_SECONDS
    rate_limit_global_max: int = GLOBAL_RATE_LIMIT
    rate_limit_auth_max: int = AUTH_RATE_LIMIT

    # Honour X-Forwarded-For when resolving the client address
    trust_proxy: bool = False

    # Upstream route templates used to extract route params
    routes_file: str = str(_ROUTES_PATH)

    # Security headers
    header_preset: str = "default"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


_settings: GatewaySettings | None = None


def get_settings() -> GatewaySettings:
    """Get or create the singleton settings instance."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def load_settings() -> GatewaySettings:
    """Load settings from env vars (env vars override model defaults)."""
    global _settings
    _settings = GatewaySettings()
    logger.info(
        "config_loaded",
        upstream_url=_settings.upstream_url,
        port=_settings.listen_port,
        environment=_settings.environment,
    )
    return _settings


def register_reload_handler() -> None:
    """Register SIGHUP handler for hot-reload of configuration."""
    import threading

    if threading.current_thread() is not threading.main_thread():
        logger.debug("skipping_sighup_handler", reason="not main thread")
        return

    def _reload(signum, frame):
        logger.info("config_reload_triggered")
        load_settings()

    try:
        signal.signal(signal.SIGHUP, _reload)
    except ValueError:
        logger.debug("skipping_sighup_handler", reason="signal not supported")
