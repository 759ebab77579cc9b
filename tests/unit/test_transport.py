"""Unit tests for the HTTPS incident transport."""

from __future__ import annotations

import asyncio
import json
import ssl
from datetime import UTC, datetime

import httpx
import pytest
import trustme

from crashwatch.dispatch import build_transport
from crashwatch.dispatch.transport import (
    HEALTH_PATH,
    INCIDENTS_PATH,
    DispatchError,
    ErrorCode,
    HttpIncidentTransport,
    build_ssl_context,
)
from crashwatch.models.config import DispatchConfig
from crashwatch.models.incidents import IncidentRecord

_ADDRESS = "https://incidents.test"


def _record() -> IncidentRecord:
    return IncidentRecord(
        incident_id="payment-svc-app-CrashLoopBackOff-1705312800-abcd1234",
        workload_name="payment-svc-7d9f8b-x2kj",
        namespace="checkout",
        container_name="app",
        failure_reason="CrashLoopBackOff",
        logs="panic: boom\n",
        workload_manifest_json="{}",
        owner_manifest_json="",
        captured_at=datetime(2024, 1, 15, 10, 0, tzinfo=UTC),
    )


def _transport(handler, **kwargs) -> HttpIncidentTransport:
    kwargs.setdefault("keepalive_interval", 0)
    return HttpIncidentTransport(_ADDRESS, transport=httpx.MockTransport(handler), **kwargs)


# ---------------------------------------------------------------------------
# send()
# ---------------------------------------------------------------------------


class TestSend:
    async def test_acknowledged(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"status": "Received", "receipt_id": "rcpt-1"})

        transport = _transport(handler)
        receipt = await transport.send(_record())
        await transport.close()

        assert receipt.status == "Received"
        assert receipt.receipt_id == "rcpt-1"
        assert len(seen) == 1
        assert seen[0].method == "POST"
        assert seen[0].url.path == INCIDENTS_PATH
        body = json.loads(seen[0].content)
        assert body["failure_reason"] == "CrashLoopBackOff"
        assert body["timestamp"] == "2024-01-15T10:00:00+00:00"

    async def test_ack_without_json_body(self) -> None:
        transport = _transport(lambda request: httpx.Response(202, text="accepted"))
        receipt = await transport.send(_record())
        await transport.close()

        assert receipt.status == "Accepted"
        assert receipt.receipt_id == ""

    async def test_error_envelope_code_used(self) -> None:
        transport = _transport(lambda request: httpx.Response(500, json={"error": "INTERNAL", "detail": "db down"}))
        with pytest.raises(DispatchError) as exc_info:
            await transport.send(_record())
        await transport.close()

        assert exc_info.value.code == ErrorCode.INTERNAL
        assert exc_info.value.message == "db down"
        assert exc_info.value.transient is True

    @pytest.mark.parametrize(
        ("status", "code", "transient"),
        [
            (400, ErrorCode.INVALID_ARGUMENT, False),
            (401, ErrorCode.UNAUTHENTICATED, False),
            (403, ErrorCode.PERMISSION_DENIED, False),
            (409, ErrorCode.FAILED_PRECONDITION, False),
            (429, ErrorCode.RESOURCE_EXHAUSTED, True),
            (502, ErrorCode.INTERNAL, True),
            (503, ErrorCode.UNAVAILABLE, True),
            (504, ErrorCode.DEADLINE_EXCEEDED, True),
            (418, ErrorCode.UNKNOWN, True),
        ],
    )
    async def test_status_mapping_without_envelope(self, status: int, code: ErrorCode, transient: bool) -> None:
        transport = _transport(lambda request: httpx.Response(status, text="nope"))
        with pytest.raises(DispatchError) as exc_info:
            await transport.send(_record())
        await transport.close()

        assert exc_info.value.code == code
        assert exc_info.value.transient is transient

    async def test_unknown_envelope_code_falls_back_to_status(self) -> None:
        transport = _transport(lambda request: httpx.Response(503, json={"error": "MAINTENANCE"}))
        with pytest.raises(DispatchError) as exc_info:
            await transport.send(_record())
        await transport.close()

        assert exc_info.value.code == ErrorCode.UNAVAILABLE

    async def test_timeout_is_deadline_exceeded(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        transport = _transport(handler)
        with pytest.raises(DispatchError) as exc_info:
            await transport.send(_record())
        await transport.close()

        assert exc_info.value.code == ErrorCode.DEADLINE_EXCEEDED

    async def test_connection_error_is_unavailable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        transport = _transport(handler)
        with pytest.raises(DispatchError) as exc_info:
            await transport.send(_record())
        await transport.close()

        assert exc_info.value.code == ErrorCode.UNAVAILABLE
        assert exc_info.value.transient is True

    async def test_send_after_close(self) -> None:
        transport = _transport(lambda request: httpx.Response(200))
        await transport.close()
        await transport.close()

        with pytest.raises(DispatchError) as exc_info:
            await transport.send(_record())
        assert exc_info.value.code == ErrorCode.UNAVAILABLE

    def test_empty_address_rejected(self) -> None:
        with pytest.raises(ValueError):
            HttpIncidentTransport("")


# ---------------------------------------------------------------------------
# Keep-alive
# ---------------------------------------------------------------------------


class TestKeepAlive:
    async def test_probe_success(self) -> None:
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(200, json={"status": "ok"})

        transport = _transport(handler)
        assert await transport.probe() is True
        await transport.close()
        assert paths == [HEALTH_PATH]

    async def test_probe_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("down", request=request)

        transport = _transport(handler)
        assert await transport.probe() is False
        await transport.close()

    async def test_reset_replaces_client(self) -> None:
        transport = _transport(lambda request: httpx.Response(200, json={"status": "Received"}))
        old = transport._client

        await transport.reset()

        assert transport._client is not old
        assert old.is_closed
        assert (await transport.send(_record())).status == "Received"
        await transport.close()

    async def test_reset_waits_for_inflight_send(self) -> None:
        arrived = asyncio.Event()
        release = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            arrived.set()
            await release.wait()
            return httpx.Response(200, json={"status": "Received", "receipt_id": "r-1"})

        transport = _transport(handler)
        old = transport._client
        sending = asyncio.create_task(transport.send(_record()))
        await arrived.wait()

        await transport.reset()
        assert transport._client is not old
        assert not old.is_closed

        release.set()
        receipt = await sending
        assert receipt.receipt_id == "r-1"
        assert old.is_closed
        assert transport._leases == {}
        await transport.close()

    async def test_close_releases_draining_client(self) -> None:
        arrived = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            arrived.set()
            await asyncio.Event().wait()
            return httpx.Response(200)

        transport = _transport(handler)
        old = transport._client
        sending = asyncio.create_task(transport.send(_record()))
        await arrived.wait()
        await transport.reset()

        await transport.close()

        assert old.is_closed
        assert transport._client.is_closed
        sending.cancel()
        await asyncio.gather(sending, return_exceptions=True)

    async def test_failed_probe_triggers_reset(self) -> None:
        probes = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal probes
            probes += 1
            raise httpx.ConnectError("down", request=request)

        transport = _transport(handler, keepalive_interval=0.01)
        original = transport._client
        await transport.start()
        await asyncio.sleep(0.1)
        await transport.close()

        assert probes >= 1
        assert transport._client is not original
        assert transport._probe_task is None

    async def test_disabled_keepalive_starts_no_task(self) -> None:
        transport = _transport(lambda request: httpx.Response(200), keepalive_interval=0)
        await transport.start()
        assert transport._probe_task is None
        await transport.close()


# ---------------------------------------------------------------------------
# build_transport()
# ---------------------------------------------------------------------------


class TestBuildTransport:
    async def test_insecure_mode(self) -> None:
        transport = build_transport(DispatchConfig(address=_ADDRESS, insecure=True, keepalive_interval=0))
        assert transport.address == _ADDRESS
        await transport.close()

    def test_mutual_tls_requires_all_paths(self) -> None:
        config = DispatchConfig(address=_ADDRESS, ca_cert_path="/etc/tls/ca.crt")
        with pytest.raises(ValueError) as exc_info:
            build_transport(config)
        message = str(exc_info.value)
        assert "CRASHWATCH_TLS_CLIENT_CERT" in message
        assert "CRASHWATCH_TLS_CLIENT_KEY" in message
        assert "CRASHWATCH_TLS_CA_CERT" not in message

    def test_missing_certificate_file(self, tmp_path) -> None:
        config = DispatchConfig(
            address=_ADDRESS,
            ca_cert_path=str(tmp_path / "ca.crt"),
            client_cert_path=str(tmp_path / "tls.crt"),
            client_key_path=str(tmp_path / "tls.key"),
        )
        with pytest.raises(OSError):
            build_transport(config)

    async def test_mutual_tls_with_real_certificates(self, tls_files: dict[str, str]) -> None:
        config = DispatchConfig(
            address=_ADDRESS,
            ca_cert_path=tls_files["ca"],
            client_cert_path=tls_files["cert"],
            client_key_path=tls_files["key"],
            keepalive_interval=0,
        )
        transport = build_transport(config)
        assert transport.address == _ADDRESS
        await transport.close()


# ---------------------------------------------------------------------------
# build_ssl_context()
# ---------------------------------------------------------------------------


@pytest.fixture
def ca() -> trustme.CA:
    return trustme.CA()


@pytest.fixture
def tls_files(ca: trustme.CA, tmp_path) -> dict[str, str]:
    client_cert = ca.issue_cert("client.crashwatch.test")
    paths = {"ca": tmp_path / "ca.crt", "cert": tmp_path / "tls.crt", "key": tmp_path / "tls.key"}
    ca.cert_pem.write_to_path(str(paths["ca"]))
    client_cert.cert_chain_pems[0].write_to_path(str(paths["cert"]))
    client_cert.private_key_pem.write_to_path(str(paths["key"]))
    return {name: str(path) for name, path in paths.items()}


def _server_context(server_ca: trustme.CA, client_ca: trustme.CA) -> ssl.SSLContext:
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    server_ca.issue_cert("incidents.test").configure_cert(context)
    client_ca.configure_trust(context)
    context.verify_mode = ssl.CERT_REQUIRED
    return context


def _handshake(client_context: ssl.SSLContext, server_context: ssl.SSLContext) -> tuple[ssl.SSLObject, ssl.SSLObject]:
    """Run a TLS handshake between two in-memory endpoints."""
    client_in, client_out, server_in, server_out = (ssl.MemoryBIO() for _ in range(4))
    client = client_context.wrap_bio(client_in, client_out, server_hostname="incidents.test")
    server = server_context.wrap_bio(server_in, server_out, server_side=True)

    client_done = server_done = False
    for _ in range(10):
        if not client_done:
            try:
                client.do_handshake()
                client_done = True
            except ssl.SSLWantReadError:
                pass
        server_in.write(client_out.read())
        if not server_done:
            try:
                server.do_handshake()
                server_done = True
            except ssl.SSLWantReadError:
                pass
        client_in.write(server_out.read())
        if client_done and server_done:
            break
    assert client_done and server_done
    return client, server


class TestSslContext:
    def test_verifies_server_and_hostname(self, tls_files: dict[str, str]) -> None:
        context = build_ssl_context(tls_files["ca"], tls_files["cert"], tls_files["key"])
        assert context.verify_mode == ssl.CERT_REQUIRED
        assert context.check_hostname is True

    def test_handshake_presents_client_certificate(self, ca: trustme.CA, tls_files: dict[str, str]) -> None:
        context = build_ssl_context(tls_files["ca"], tls_files["cert"], tls_files["key"])

        client, server = _handshake(context, _server_context(server_ca=ca, client_ca=ca))

        assert client.getpeercert()
        assert ("DNS", "client.crashwatch.test") in server.getpeercert()["subjectAltName"]

    def test_untrusted_server_rejected(self, ca: trustme.CA, tls_files: dict[str, str]) -> None:
        context = build_ssl_context(tls_files["ca"], tls_files["cert"], tls_files["key"])
        impostor = _server_context(server_ca=trustme.CA(), client_ca=ca)

        with pytest.raises(ssl.SSLCertVerificationError):
            _handshake(context, impostor)

    def test_key_not_matching_certificate_rejected(self, ca: trustme.CA, tls_files: dict[str, str], tmp_path) -> None:
        other_key = tmp_path / "other.key"
        ca.issue_cert("other.crashwatch.test").private_key_pem.write_to_path(str(other_key))

        with pytest.raises(ssl.SSLError):
            build_ssl_context(tls_files["ca"], tls_files["cert"], str(other_key))
