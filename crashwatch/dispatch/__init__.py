"""Incident dispatch for crashwatch.

Delivers enriched incident records to the downstream incident service.

Exports:
    IncidentDispatcher    -- Builds records and sends each one exactly once.
    IncidentTransport     -- Protocol every transport implements.
    HttpIncidentTransport -- Mutual-TLS HTTPS transport with keep-alive probing.
    DispatchError         -- Delivery failure with an ErrorCode classification.
    build_transport       -- Factory used by the application bootstrap.
"""

from __future__ import annotations

import ssl
from typing import TYPE_CHECKING

import structlog

from crashwatch.dispatch.dispatcher import IncidentDispatcher
from crashwatch.dispatch.transport import (
    DispatchError,
    ErrorCode,
    HttpIncidentTransport,
    IncidentTransport,
    build_ssl_context,
)

if TYPE_CHECKING:
    from crashwatch.models.config import DispatchConfig

_log = structlog.get_logger(component="dispatch")

__all__ = [
    "DispatchError",
    "ErrorCode",
    "HttpIncidentTransport",
    "IncidentDispatcher",
    "IncidentTransport",
    "build_ssl_context",
    "build_transport",
]


def build_transport(config: DispatchConfig) -> HttpIncidentTransport:
    """Build the incident transport from resolved configuration.

    Mutual TLS needs all three of CRASHWATCH_TLS_CA_CERT,
    CRASHWATCH_TLS_CLIENT_CERT and CRASHWATCH_TLS_CLIENT_KEY. Setting
    CRASHWATCH_INSECURE=true skips them (no client certificate, no server
    verification) and is meant for local development only.

    Raises:
        ValueError: if mutual TLS is required but a path is missing.
        OSError:    if a certificate file cannot be read.
    """
    if config.insecure:
        _log.warning("incident_transport_insecure", address=config.address)
        verify: ssl.SSLContext | bool = False
    else:
        missing = [
            name
            for name, value in (
                ("TLS_CA_CERT", config.ca_cert_path),
                ("TLS_CLIENT_CERT", config.client_cert_path),
                ("TLS_CLIENT_KEY", config.client_key_path),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"Mutual TLS requires CRASHWATCH_{', CRASHWATCH_'.join(missing)}")
        verify = build_ssl_context(config.ca_cert_path, config.client_cert_path, config.client_key_path)
        _log.info("incident_transport_mtls", address=config.address)

    return HttpIncidentTransport(
        address=config.address,
        verify=verify,
        timeout=config.timeout_seconds,
        keepalive_interval=config.keepalive_interval,
        keepalive_timeout=config.keepalive_timeout,
    )
