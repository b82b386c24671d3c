from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_str(name: str, default: str | None = None) -> str | None:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


@dataclass(frozen=True)
class Settings:
    # Core
    events_db: str = os.getenv("SPLAT_EVENTS_DB", ":memory:")
    log_dir: str | None = _env_str("SPLAT_LOG_DIR")
    log_level: str = os.getenv("SPLAT_LOG_LEVEL", "INFO")
    port_base: int = _env_int("SPLAT_PORT_BASE", 10000)
    bind_address: str = os.getenv("SPLAT_BIND_ADDRESS", "127.0.0.1")

    # Reverse proxy
    proxy_dir: str = os.getenv("SPLAT_PROXY_DIR", "/etc/nginx/conf.d")
    proxy_template: str | None = _env_str("SPLAT_PROXY_TEMPLATE")
    proxy_reload_cmd: str = os.getenv("SPLAT_PROXY_RELOAD_CMD", "nginx -s reload")
    proxy_reload_timeout_s: int = _env_int("SPLAT_PROXY_RELOAD_TIMEOUT_S", 30)

    # Volumes: sources must resolve inside volume_root.
    volume_root: str = os.getenv("SPLAT_VOLUME_ROOT", "/srv")
    volume_target: str = os.getenv("SPLAT_VOLUME_TARGET", "/volumes")

    # Registry credentials (ECR login token from `aws ecr get-login-password`).
    registry_token: str | None = _env_str("ECR_TOKEN")
    registry_username: str = os.getenv("SPLAT_REGISTRY_USER", "AWS")

    # Timeouts
    stop_timeout_s: int = _env_int("SPLAT_STOP_TIMEOUT_S", 10)
    docker_timeout_s: int = _env_int("SPLAT_DOCKER_TIMEOUT_S", 120)
    startup_timeout_s: int = _env_int("SPLAT_STARTUP_TIMEOUT_S", 600)

    # Status API (optional)
    enable_api: bool = _env_bool("SPLAT_ENABLE_API", False)
    api_host: str = os.getenv("SPLAT_API_HOST", "127.0.0.1")
    api_port: int = _env_int("SPLAT_API_PORT", 8700)


settings = Settings()
