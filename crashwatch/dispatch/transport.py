"""HTTPS transport to the downstream incident service.

Sends one IncidentRecord per call as a JSON POST over a mutually
authenticated TLS connection. The connection pool is shared across
reconciles and kept warm by a keep-alive probe; a failed probe rebuilds the
client so the next send opens a fresh connection instead of failing on a
silently dead one. A replaced client stays open until the sends already
running on it have finished.

Wire contract::

    POST {address}/v1/incidents          body: IncidentRecord.to_payload()
    2xx  {"status": "Received", "receipt_id": "..."}
    4xx/5xx {"error": "<ErrorCode>", "detail": "..."}
"""

from __future__ import annotations

import asyncio
import ssl
from enum import StrEnum
from typing import Protocol

import httpx
import structlog

from crashwatch.models.incidents import DispatchReceipt, IncidentRecord

_log = structlog.get_logger(component="dispatch.transport")

INCIDENTS_PATH = "/v1/incidents"
HEALTH_PATH = "/healthz"


class ErrorCode(StrEnum):
    """Failure classification reported by the incident service or the transport."""

    INTERNAL = "INTERNAL"
    UNAVAILABLE = "UNAVAILABLE"
    DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"
    RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"
    UNKNOWN = "UNKNOWN"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    FAILED_PRECONDITION = "FAILED_PRECONDITION"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    PERMISSION_DENIED = "PERMISSION_DENIED"


_TRANSIENT_CODES = frozenset(
    {
        ErrorCode.INTERNAL,
        ErrorCode.UNAVAILABLE,
        ErrorCode.DEADLINE_EXCEEDED,
        ErrorCode.RESOURCE_EXHAUSTED,
        ErrorCode.UNKNOWN,
    }
)

_STATUS_CODES: dict[int, ErrorCode] = {
    400: ErrorCode.INVALID_ARGUMENT,
    401: ErrorCode.UNAUTHENTICATED,
    403: ErrorCode.PERMISSION_DENIED,
    409: ErrorCode.FAILED_PRECONDITION,
    412: ErrorCode.FAILED_PRECONDITION,
    422: ErrorCode.INVALID_ARGUMENT,
    429: ErrorCode.RESOURCE_EXHAUSTED,
    503: ErrorCode.UNAVAILABLE,
    504: ErrorCode.DEADLINE_EXCEEDED,
}


class DispatchError(Exception):
    """Delivery of an incident failed; carries the service's classification."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message

    @property
    def transient(self) -> bool:
        """True when re-delivering the same record later may succeed."""
        return self.code in _TRANSIENT_CODES


class IncidentTransport(Protocol):
    """Single-shot upload of one incident record."""

    async def send(self, record: IncidentRecord) -> DispatchReceipt: ...

    async def close(self) -> None: ...


def build_ssl_context(ca_cert_path: str, client_cert_path: str, client_key_path: str) -> ssl.SSLContext:
    """Build a client TLS context that presents a certificate and verifies the server.

    Raises:
        OSError / ssl.SSLError: if a file is missing or unreadable.
    """
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cafile=ca_cert_path)
    context.load_cert_chain(certfile=client_cert_path, keyfile=client_key_path)
    return context


def _code_for_status(status_code: int) -> ErrorCode:
    if status_code in _STATUS_CODES:
        return _STATUS_CODES[status_code]
    if status_code >= 500:
        return ErrorCode.INTERNAL
    return ErrorCode.UNKNOWN


def _error_from_response(response: httpx.Response) -> DispatchError:
    """Map a non-2xx response to a DispatchError, preferring the JSON envelope."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        raw_code = str(body.get("error", ""))
        detail = str(body.get("detail", "")) or response.text[:200]
        if raw_code in ErrorCode.__members__:
            return DispatchError(ErrorCode(raw_code), detail)
        return DispatchError(_code_for_status(response.status_code), detail)
    return DispatchError(_code_for_status(response.status_code), response.text[:200])


class HttpIncidentTransport:
    """IncidentTransport over HTTPS using a shared httpx.AsyncClient.

    Args:
        address:            Base URL of the incident service.
        verify:             SSLContext for mutual TLS, or False for the
                            insecure development mode.
        timeout:            Per-request timeout in seconds.
        keepalive_interval: Seconds between keep-alive probes; 0 disables.
        keepalive_timeout:  Timeout of a single probe.
        transport:          Optional httpx transport (tests use MockTransport).
    """

    def __init__(
        self,
        address: str,
        verify: ssl.SSLContext | bool = True,
        timeout: float = 30.0,
        keepalive_interval: float = 10.0,
        keepalive_timeout: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not address:
            raise ValueError("Incident service address must not be empty")
        self._address = address.rstrip("/")
        self._verify = verify
        self._timeout = timeout
        self._keepalive_interval = keepalive_interval
        self._keepalive_timeout = keepalive_timeout
        self._transport = transport
        self._client = self._build_client()
        # In-flight sends per client; a retired client closes when its count drops to zero.
        self._leases: dict[httpx.AsyncClient, int] = {}
        self._retired: set[httpx.AsyncClient] = set()
        self._reset_lock = asyncio.Lock()
        self._probe_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def address(self) -> str:
        return self._address

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._address,
            verify=self._verify,
            timeout=self._timeout,
            limits=httpx.Limits(keepalive_expiry=max(self._keepalive_interval * 3, 30.0)),
            transport=self._transport,
        )

    async def start(self) -> None:
        """Launch the keep-alive probe loop."""
        if self._keepalive_interval <= 0 or self._probe_task is not None:
            return
        self._probe_task = asyncio.create_task(self._keepalive_loop(), name="incident-keepalive")

    async def send(self, record: IncidentRecord) -> DispatchReceipt:
        """POST *record* once and wait for the acknowledgement.

        Raises:
            DispatchError: on transport failure or a non-2xx response.
        """
        if self._closed:
            raise DispatchError(ErrorCode.UNAVAILABLE, "transport is closed")

        client = self._client
        self._leases[client] = self._leases.get(client, 0) + 1
        try:
            response = await client.post(INCIDENTS_PATH, json=record.to_payload())
        except httpx.TimeoutException as exc:
            raise DispatchError(ErrorCode.DEADLINE_EXCEEDED, f"request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise DispatchError(ErrorCode.UNAVAILABLE, f"transport error: {exc}") from exc
        finally:
            await self._release(client)

        if not response.is_success:
            raise _error_from_response(response)

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        return DispatchReceipt(
            status=str(body.get("status") or response.reason_phrase or "OK"),
            receipt_id=str(body.get("receipt_id") or ""),
        )

    async def probe(self) -> bool:
        """Return True if the service answered a lightweight request."""
        try:
            await self._client.get(HEALTH_PATH, timeout=self._keepalive_timeout)
        except httpx.HTTPError as exc:
            _log.warning("keepalive_probe_failed", address=self._address, error=str(exc))
            return False
        return True

    async def _release(self, client: httpx.AsyncClient) -> None:
        remaining = self._leases[client] - 1
        if remaining:
            self._leases[client] = remaining
            return
        del self._leases[client]
        if client in self._retired:
            self._retired.discard(client)
            await client.aclose()

    async def reset(self) -> None:
        """Replace the client so the next send opens a fresh connection.

        The old client is closed once the sends still using it complete.
        """
        async with self._reset_lock:
            if self._closed:
                return
            old = self._client
            self._client = self._build_client()
        if old in self._leases:
            self._retired.add(old)
            _log.info("incident_transport_reset", address=self._address, draining=self._leases[old])
            return
        await old.aclose()
        _log.info("incident_transport_reset", address=self._address, draining=0)

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self._keepalive_interval)
            if not await self.probe():
                await self.reset()

    async def close(self) -> None:
        """Stop probing and close the connection pool. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        if self._probe_task is not None:
            self._probe_task.cancel()
            await asyncio.gather(self._probe_task, return_exceptions=True)
            self._probe_task = None
        retired, self._retired = self._retired, set()
        for client in (self._client, *retired):
            await client.aclose()
