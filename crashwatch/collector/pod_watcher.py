"""PodWatcher: turns Pod watch events into pipeline reconciles.

Plays the role of the reconciliation scheduler. Every ADDED/MODIFIED Pod
event becomes a WorkloadSnapshot reconciled in its own task; at most
``max_concurrent_reconciles`` run at once. Events for a Pod that is still
waiting for a slot are coalesced: the queued reconcile runs once with the
latest snapshot, so pending work is bounded by the number of distinct Pods.
The watch stream reconnects with exponential back-off and relists from
scratch after HTTP 410 (Gone).

There is no requeue: a transient failure is logged and the next status
change of the Pod delivers the event again.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog
from kubernetes_asyncio import watch  # type: ignore[import-untyped]
from kubernetes_asyncio.client.exceptions import ApiException  # type: ignore[import-untyped]

from crashwatch.models.incidents import WorkloadSnapshot
from crashwatch.pipeline import IncidentPipeline, PipelineOutcome

_log = structlog.get_logger(component="collector.pod_watcher")

_BACKOFF_INITIAL = 1.0
_BACKOFF_MAX = 30.0
_WATCH_TIMEOUT_SECONDS = 300

_RECONCILE_EVENTS = frozenset({"ADDED", "MODIFIED"})


class PodWatcher:
    """Watches Pods and feeds state changes into an IncidentPipeline.

    Args:
        core_v1:   kubernetes-asyncio ``CoreV1Api``.
        pipeline:  The incident pipeline to invoke.
        namespace: Namespace to watch; empty string watches all namespaces.
        max_concurrent_reconciles: Upper bound on in-flight reconciles.
    """

    def __init__(
        self,
        core_v1: Any,
        pipeline: IncidentPipeline,
        namespace: str = "",
        max_concurrent_reconciles: int = 4,
    ) -> None:
        self._core_v1 = core_v1
        self._pipeline = pipeline
        self._namespace = namespace
        self._semaphore = asyncio.Semaphore(max_concurrent_reconciles)
        self._resource_version = ""
        self._task: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()
        # Pods waiting for a reconcile slot, keyed by namespace/name.
        self._queued: dict[str, asyncio.Task[None]] = {}
        self._latest: dict[str, WorkloadSnapshot] = {}
        self._connected = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def connected(self) -> bool:
        """True while a watch stream is open."""
        return self._connected

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="pod-watcher")

    async def stop(self) -> None:
        """Cancel the watch loop and every in-flight reconcile."""
        tasks = [t for t in (self._task, *self._inflight) if t is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        self._inflight.clear()
        self._queued.clear()
        self._latest.clear()
        self._connected = False

    async def _run(self) -> None:
        backoff = _BACKOFF_INITIAL
        while True:
            try:
                await self._watch_once()
                backoff = _BACKOFF_INITIAL
                continue
            except ApiException as exc:
                if exc.status == 410:
                    _log.info("pod_watch_expired", resource_version=self._resource_version)
                    self._resource_version = ""
                    continue
                _log.warning("pod_watch_api_error", status=exc.status, reason=exc.reason, retry_in=backoff)
            except Exception as exc:
                _log.warning("pod_watch_error", error=str(exc), retry_in=backoff)
            finally:
                self._connected = False
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, _BACKOFF_MAX)

    async def _watch_once(self) -> None:
        kwargs: dict[str, Any] = {
            "timeout_seconds": _WATCH_TIMEOUT_SECONDS,
            "allow_watch_bookmarks": True,
        }
        if self._resource_version:
            kwargs["resource_version"] = self._resource_version
        if self._namespace:
            list_fn = self._core_v1.list_namespaced_pod
            kwargs["namespace"] = self._namespace
        else:
            list_fn = self._core_v1.list_pod_for_all_namespaces

        w = watch.Watch()
        async with w.stream(list_fn, **kwargs) as stream:
            self._connected = True
            _log.debug("pod_watch_connected", namespace=self._namespace or "*")
            async for event in stream:
                self.handle_event(str(event.get("type", "")), event.get("raw_object") or {})

    def handle_event(self, event_type: str, raw: dict[str, Any]) -> asyncio.Task[None] | None:
        """Schedule a reconcile for an ADDED/MODIFIED event; ignore the rest.

        Returns the task that will reconcile the Pod. While a Pod is queued,
        later events only replace its snapshot and return the same task.
        """
        metadata = raw.get("metadata") or {}
        version = metadata.get("resourceVersion")
        if version:
            self._resource_version = str(version)

        if event_type not in _RECONCILE_EVENTS:
            return None
        snapshot = WorkloadSnapshot.from_pod(raw)
        if not snapshot.name:
            return None

        key = f"{snapshot.namespace}/{snapshot.name}"
        self._latest[key] = snapshot
        queued = self._queued.get(key)
        if queued is not None:
            return queued

        task = asyncio.create_task(self._reconcile(key), name=f"reconcile-{key}")
        self._queued[key] = task
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _reconcile(self, key: str) -> None:
        async with self._semaphore:
            self._queued.pop(key, None)
            snapshot = self._latest.pop(key)
            try:
                result = await self._pipeline.reconcile(snapshot)
            except Exception as exc:
                _log.error(
                    "reconcile_unexpected_error",
                    namespace=snapshot.namespace,
                    pod=snapshot.name,
                    error=str(exc),
                    exc_info=True,
                )
                return

        if result.outcome in (PipelineOutcome.TRANSIENT_FAILURE, PipelineOutcome.PERMANENT_FAILURE):
            _log.warning(
                "reconcile_failed",
                namespace=snapshot.namespace,
                pod=snapshot.name,
                outcome=str(result.outcome),
                retryable=result.retryable,
                error=str(result.error),
            )
        elif result.outcome != PipelineOutcome.IDLE:
            _log.debug(
                "reconcile_done",
                namespace=snapshot.namespace,
                pod=snapshot.name,
                outcome=str(result.outcome),
                incidents=result.incident_ids,
            )
