"""Application bootstrap for crashwatch.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config → logging → K8s client → redaction → ledger
              → harvester → transport → pipeline → watcher → health API

Shutdown is graceful: components are stopped in reverse startup order.
Each component's stop error is caught and logged independently so that a
single failure does not prevent the rest from shutting down cleanly.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING, Any

from crashwatch.config import load_config
from crashwatch.models.config import CrashWatchConfig
from crashwatch.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    import structlog

    from crashwatch.collector.pod_watcher import PodWatcher
    from crashwatch.dispatch.transport import HttpIncidentTransport
    from crashwatch.harvester.redaction import RedactionEngine
    from crashwatch.ledger.debounce import DebounceLedger
    from crashwatch.pipeline import IncidentPipeline

_SHUTDOWN_GRACE_SECONDS = 15


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class CrashWatchApp:
    """Application root. Owns every component and coordinates their lifecycle.

    Calling ``stop()`` on an app that was never started (or already
    stopped) is safe.
    """

    def __init__(self) -> None:
        self.config: CrashWatchConfig | None = None

        self._api_client: Any = None
        self._core_v1: Any = None
        self._redactor: RedactionEngine | None = None
        self._ledger: DebounceLedger | None = None
        self._harvester: Any = None
        self._transport: HttpIncidentTransport | None = None
        self._pipeline: IncidentPipeline | None = None
        self._watcher: PodWatcher | None = None
        self._health_server: Any = None

        # Background tasks that must be cancelled on shutdown
        self._background_tasks: list[asyncio.Task[None]] = []

        self._running = False
        self._log: structlog.stdlib.BoundLogger | None = None

    @property
    def ready(self) -> bool:
        return self._running and self._watcher is not None and self._watcher.connected

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a mandatory component cannot start.
        """
        try:
            self.config = load_config()
        except ValueError as exc:
            raise _ComponentError("config", exc) from exc

        setup_logging(self.config.log.level)
        self._log = get_logger("app")
        self._log.info(
            "crashwatch_starting",
            version=_crashwatch_version(),
            log_level=self.config.log.level,
            debounce_ttl_seconds=self.config.debounce.ttl_seconds,
        )

        await self._start_k8s_client()
        self._start_redaction()
        self._start_ledger()
        self._start_harvester()
        await self._start_transport()
        self._start_pipeline()
        await self._start_watcher()
        await self._start_health()

        self._running = True
        self._log.info("crashwatch_started", health_port=self.config.health.port)

    async def _start_k8s_client(self) -> None:
        """Initialise kubernetes-asyncio from in-cluster config or kubeconfig."""
        assert self._log is not None
        self._log.debug("k8s_client_starting")
        try:
            import kubernetes_asyncio.config as k8s_config  # type: ignore[import-untyped]
            from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]

            try:
                k8s_config.load_incluster_config()
                self._log.info("k8s_client_configured", source="incluster")
            except k8s_config.ConfigException:
                await k8s_config.load_kube_config()
                self._log.info("k8s_client_configured", source="kubeconfig")

            self._api_client = k8s_client.ApiClient()
            self._core_v1 = k8s_client.CoreV1Api(self._api_client)
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc

    def _start_redaction(self) -> None:
        """Compile redaction rules; a malformed pattern is fatal."""
        assert self._log is not None
        from crashwatch.harvester.redaction import RedactionEngine, RedactionRuleError

        try:
            self._redactor = RedactionEngine()
        except RedactionRuleError as exc:
            raise _ComponentError("redaction", exc) from exc
        self._log.info("redaction_engine_ready", rules=len(self._redactor.rule_names))

    def _start_ledger(self) -> None:
        """Build the process-wide debounce ledger and its sweeper task."""
        assert self._log is not None
        assert self.config is not None
        from crashwatch.ledger.debounce import DebounceLedger

        ttl = float(self.config.debounce.ttl_seconds)
        ledger = DebounceLedger(default_ttl=ttl)

        async def _sweeper() -> None:
            while True:
                await asyncio.sleep(ttl / 2)
                ledger.sweep()

        task = asyncio.create_task(_sweeper(), name="debounce-sweeper")
        self._background_tasks.append(task)
        self._ledger = ledger
        self._log.info("debounce_ledger_started", ttl_seconds=ttl)

    def _start_harvester(self) -> None:
        assert self._redactor is not None
        from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]

        from crashwatch.harvester.cluster import KubernetesClusterReader
        from crashwatch.harvester.context import ContextHarvester

        reader = KubernetesClusterReader(
            core_v1=self._core_v1,
            apps_v1=k8s_client.AppsV1Api(self._api_client),
            batch_v1=k8s_client.BatchV1Api(self._api_client),
            api_client=self._api_client,
        )
        self._harvester = ContextHarvester(reader=reader, redactor=self._redactor)

    async def _start_transport(self) -> None:
        """Build the mutual-TLS transport and start keep-alive probing."""
        assert self._log is not None
        assert self.config is not None
        self._log.debug("incident_transport_starting")
        try:
            from crashwatch.dispatch import build_transport

            transport = build_transport(self.config.dispatch)
            await transport.start()
            self._transport = transport
            self._log.info("incident_transport_started", address=transport.address)
        except Exception as exc:
            raise _ComponentError("transport", exc) from exc

    def _start_pipeline(self) -> None:
        assert self.config is not None
        assert self._ledger is not None
        assert self._transport is not None
        from crashwatch.detector.classifier import FailureClassifier
        from crashwatch.dispatch.dispatcher import IncidentDispatcher
        from crashwatch.pipeline import IncidentPipeline

        self._pipeline = IncidentPipeline(
            classifier=FailureClassifier(),
            ledger=self._ledger,
            harvester=self._harvester,
            dispatcher=IncidentDispatcher(self._transport),
            ttl=float(self.config.debounce.ttl_seconds),
            tail_lines=self.config.harvest.tail_lines,
        )

    async def _start_watcher(self) -> None:
        assert self._log is not None
        assert self.config is not None
        assert self._pipeline is not None
        from crashwatch.collector.pod_watcher import PodWatcher

        watcher = PodWatcher(
            core_v1=self._core_v1,
            pipeline=self._pipeline,
            namespace=self.config.watch.namespace,
            max_concurrent_reconciles=self.config.watch.max_concurrent_reconciles,
        )
        await watcher.start()
        self._watcher = watcher
        self._log.info("pod_watcher_started", namespace=self.config.watch.namespace or "*")

    async def _start_health(self) -> None:
        """Serve /healthz and /readyz with uvicorn."""
        assert self._log is not None
        assert self.config is not None
        try:
            import uvicorn  # type: ignore[import-untyped]

            from crashwatch.api import create_app

            health_app = create_app(readiness_fn=lambda: self.ready)
            uv_config = uvicorn.Config(
                app=health_app,
                host="0.0.0.0",
                port=self.config.health.port,
                log_config=None,
                access_log=False,
            )
            server = uvicorn.Server(uv_config)
            task = asyncio.create_task(server.serve(), name="health-server")
            self._background_tasks.append(task)
            self._health_server = server
        except Exception as exc:
            raise _ComponentError("health", exc) from exc

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Gracefully stop all components in reverse startup order."""
        if not self._running and self._log is None:
            return

        log = self._log or get_logger("app")
        log.info("crashwatch_stopping")
        self._running = False

        await self._stop_component("watcher", self._watcher)
        await self._stop_component("transport", self._transport)

        for task in reversed(self._background_tasks):
            if not task.done():
                task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

        if self._api_client is not None:
            try:
                await self._api_client.close()
            except Exception as exc:
                log.debug("k8s_client_close_failed", error=str(exc))
            self._api_client = None

        log.info("crashwatch_stopped")

    async def _stop_component(self, name: str, component: object | None) -> None:
        """Call stop()/close() on a component, catching all errors."""
        if component is None:
            return
        log = self._log or get_logger("app")
        stop_fn = getattr(component, "stop", None) or getattr(component, "close", None)
        if stop_fn is None:
            return
        try:
            await asyncio.wait_for(stop_fn(), timeout=_SHUTDOWN_GRACE_SECONDS)
        except TimeoutError:
            log.warning("component_stop_timeout", component=name, timeout=_SHUTDOWN_GRACE_SECONDS)
        except Exception as exc:
            log.error("component_stop_failed", component=name, error=str(exc))


def _crashwatch_version() -> str:
    from crashwatch import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main() -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = CrashWatchApp()
    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    try:
        await app.start()
        await shutdown.wait()
    except _ComponentError as exc:
        log = get_logger("app")
        log.critical(
            "startup_failed",
            component=exc.component,
            error=str(exc.cause),
        )
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        if app._running:
            await app.stop()


def run() -> None:
    """Console-script entry point."""
    asyncio.run(main())
