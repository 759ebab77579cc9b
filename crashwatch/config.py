"""Configuration loading from environment variables."""

from __future__ import annotations

import os

from crashwatch.models.config import (
    CrashWatchConfig,
    DebounceConfig,
    DispatchConfig,
    HarvestConfig,
    HealthConfig,
    LogConfig,
    WatchConfig,
)
from crashwatch.observability.logging import LEVELS

_DEFAULT_DEBOUNCE_TTL = 300


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"CRASHWATCH_{key}", default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = _env(key, str(default).lower())
    return val.lower() in ("true", "1", "yes")


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    val = int(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _env_float(key: str, default: float) -> float:
    return float(_env(key, str(default)))


def _debounce_ttl() -> int:
    # Unparsable or non-positive values fall back to the default cooldown.
    try:
        val = int(_env("DEBOUNCE_TTL_SECONDS", str(_DEFAULT_DEBOUNCE_TTL)))
    except ValueError:
        return _DEFAULT_DEBOUNCE_TTL
    return val if val > 0 else _DEFAULT_DEBOUNCE_TTL


def _validate_log_level(value: str) -> str:
    if value.lower() not in LEVELS:
        raise ValueError(f"Invalid log level: {value}. Must be one of {sorted(LEVELS)}")
    return value.lower()


def _validate_address(value: str) -> str:
    if not value.startswith(("http://", "https://")):
        raise ValueError(f"Incident service address must be an http(s) URL, got: {value!r}")
    return value.rstrip("/")


def load_config() -> CrashWatchConfig:
    """Load configuration from CRASHWATCH_* environment variables."""
    return CrashWatchConfig(
        log=LogConfig(
            level=_validate_log_level(_env("LOG_LEVEL", "info")),
        ),
        debounce=DebounceConfig(
            ttl_seconds=_debounce_ttl(),
        ),
        harvest=HarvestConfig(
            tail_lines=_env_int("LOG_TAIL_LINES", 200, min_val=1, max_val=5000),
        ),
        dispatch=DispatchConfig(
            address=_validate_address(_env("INCIDENT_SERVICE_ADDRESS", "https://localhost:50051")),
            ca_cert_path=_env("TLS_CA_CERT", ""),
            client_cert_path=_env("TLS_CLIENT_CERT", ""),
            client_key_path=_env("TLS_CLIENT_KEY", ""),
            insecure=_env_bool("INSECURE", False),
            timeout_seconds=_env_float("DISPATCH_TIMEOUT", 30.0),
            keepalive_interval=_env_float("KEEPALIVE_INTERVAL", 10.0),
            keepalive_timeout=_env_float("KEEPALIVE_TIMEOUT", 1.0),
        ),
        watch=WatchConfig(
            namespace=_env("WATCH_NAMESPACE", ""),
            max_concurrent_reconciles=_env_int("MAX_CONCURRENT_RECONCILES", 4, min_val=1, max_val=64),
        ),
        health=HealthConfig(
            port=_env_int("HEALTH_PORT", 8081, min_val=1024, max_val=65535),
        ),
    )
