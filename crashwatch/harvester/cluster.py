"""Read-only cluster access for the context harvester.

``ClusterReader`` is the capability interface the harvester depends on;
``KubernetesClusterReader`` implements it with kubernetes-asyncio. Tests
substitute any object with the same three coroutine/method signatures.
"""

from __future__ import annotations

from typing import Any, Protocol

import aiohttp
import structlog
from kubernetes_asyncio.client.exceptions import ApiException  # type: ignore[import-untyped]

from crashwatch.models.incidents import OwnerReference

_log = structlog.get_logger(component="harvester.cluster")


class ClusterAPIError(Exception):
    """A cluster read failed (transport, auth, or unsupported request)."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(ClusterAPIError):
    """The requested object no longer exists."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        super().__init__(f"{kind} {namespace}/{name} not found", status=404)
        self.kind = kind
        self.namespace = namespace
        self.name = name


class ClusterReader(Protocol):
    """Read-only operations the harvester needs from the cluster."""

    async def get_container_log_tail(
        self,
        namespace: str,
        workload: str,
        container: str,
        max_lines: int,
    ) -> str: ...

    async def get_manifest(self, namespace: str, kind: str, name: str) -> dict[str, Any]: ...

    def resolve_owner(self, manifest: dict[str, Any]) -> OwnerReference | None: ...


def owner_of(manifest: dict[str, Any]) -> OwnerReference | None:
    """Return the controlling owner of *manifest*, if any.

    The owner reference flagged ``controller: true`` wins; otherwise the
    first well-formed reference is used.
    """
    metadata = manifest.get("metadata") or {}
    refs = [
        ref
        for ref in metadata.get("ownerReferences") or []
        if isinstance(ref, dict) and ref.get("kind") and ref.get("name")
    ]
    if not refs:
        return None
    chosen = next((ref for ref in refs if ref.get("controller")), refs[0])
    return OwnerReference(kind=str(chosen["kind"]), name=str(chosen["name"]))


class KubernetesClusterReader:
    """ClusterReader backed by kubernetes-asyncio API objects.

    Args:
        core_v1:    ``CoreV1Api`` (Pods, Pod logs).
        apps_v1:    ``AppsV1Api`` (ReplicaSets, Deployments, StatefulSets, DaemonSets).
        batch_v1:   ``BatchV1Api`` (Jobs, CronJobs).
        api_client: ``ApiClient`` used to turn model objects into plain
                    camelCase dicts.
    """

    def __init__(self, core_v1: Any, apps_v1: Any, batch_v1: Any, api_client: Any) -> None:
        self._api_client = api_client
        self._readers = {
            "Pod": core_v1.read_namespaced_pod,
            "ReplicaSet": apps_v1.read_namespaced_replica_set,
            "Deployment": apps_v1.read_namespaced_deployment,
            "StatefulSet": apps_v1.read_namespaced_stateful_set,
            "DaemonSet": apps_v1.read_namespaced_daemon_set,
            "Job": batch_v1.read_namespaced_job,
            "CronJob": batch_v1.read_namespaced_cron_job,
        }
        self._core_v1 = core_v1

    @property
    def supported_kinds(self) -> frozenset[str]:
        return frozenset(self._readers)

    async def get_container_log_tail(
        self,
        namespace: str,
        workload: str,
        container: str,
        max_lines: int,
    ) -> str:
        try:
            logs = await self._core_v1.read_namespaced_pod_log(
                name=workload,
                namespace=namespace,
                container=container,
                tail_lines=max_lines,
            )
        except ApiException as exc:
            raise _translate(exc, "Pod", namespace, workload) from exc
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise _unreachable(exc, "Pod", namespace, workload) from exc
        if isinstance(logs, bytes):
            return logs.decode("utf-8", errors="replace")
        return str(logs or "")

    async def get_manifest(self, namespace: str, kind: str, name: str) -> dict[str, Any]:
        reader = self._readers.get(kind)
        if reader is None:
            raise ClusterAPIError(f"Unsupported resource kind: {kind}")
        try:
            obj = await reader(name=name, namespace=namespace)
        except ApiException as exc:
            raise _translate(exc, kind, namespace, name) from exc
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise _unreachable(exc, kind, namespace, name) from exc
        document = obj if isinstance(obj, dict) else self._api_client.sanitize_for_serialization(obj)
        # Typed models do not carry apiVersion/kind when read back; restore kind.
        document.setdefault("kind", kind)
        return document

    def resolve_owner(self, manifest: dict[str, Any]) -> OwnerReference | None:
        return owner_of(manifest)


def _translate(exc: ApiException, kind: str, namespace: str, name: str) -> ClusterAPIError:
    if exc.status == 404:
        return NotFoundError(kind, namespace, name)
    _log.debug(
        "cluster_api_error",
        kind=kind,
        namespace=namespace,
        name=name,
        status=exc.status,
        reason=exc.reason,
    )
    return ClusterAPIError(
        f"Failed to read {kind} {namespace}/{name}: {exc.status} {exc.reason}",
        status=exc.status,
    )


def _unreachable(exc: Exception, kind: str, namespace: str, name: str) -> ClusterAPIError:
    """API server could not be reached; kubernetes-asyncio leaves these unwrapped."""
    _log.warning(
        "cluster_api_unreachable",
        kind=kind,
        namespace=namespace,
        name=name,
        error=repr(exc),
    )
    return ClusterAPIError(f"Failed to read {kind} {namespace}/{name}: {exc!r}")
