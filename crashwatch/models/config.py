"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"


@dataclass
class DebounceConfig:
    """Debounce ledger configuration."""

    ttl_seconds: int = 300


@dataclass
class HarvestConfig:
    """Context harvesting configuration."""

    tail_lines: int = 200


@dataclass
class DispatchConfig:
    """Incident service connection configuration.

    ``insecure`` disables mutual TLS and server verification and exists
    for local development only.
    """

    address: str = "https://localhost:50051"
    ca_cert_path: str = ""
    client_cert_path: str = ""
    client_key_path: str = ""
    insecure: bool = False
    timeout_seconds: float = 30.0
    keepalive_interval: float = 10.0
    keepalive_timeout: float = 1.0


@dataclass
class WatchConfig:
    """Pod watch configuration. An empty namespace watches all namespaces."""

    namespace: str = ""
    max_concurrent_reconciles: int = 4


@dataclass
class HealthConfig:
    """Liveness/readiness endpoint configuration."""

    port: int = 8081


@dataclass
class CrashWatchConfig:
    """Top-level crashwatch configuration."""

    log: LogConfig = field(default_factory=LogConfig)
    debounce: DebounceConfig = field(default_factory=DebounceConfig)
    harvest: HarvestConfig = field(default_factory=HarvestConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
