"""Context harvester.

Collects the diagnostic bundle for one reportable failure: the container's
log tail, the redacted Pod manifest and, when it can be resolved, the
redacted manifest of the Pod's owning controller.

Logs and the Pod manifest are mandatory; owner resolution is best-effort
enrichment and never fails the harvest.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

import structlog

from crashwatch.harvester.cluster import ClusterAPIError, ClusterReader, NotFoundError
from crashwatch.harvester.redaction import RedactionEngine
from crashwatch.models.incidents import HarvestedContext, OwnerReference

_log = structlog.get_logger(component="harvester.context")

DEFAULT_TAIL_LINES = 200

# Owners that are themselves managed by a higher-level controller.
_INTERMEDIATE_KINDS = frozenset({"ReplicaSet", "Job"})


class HarvestError(Exception):
    """A mandatory harvest step (logs or workload manifest) failed."""

    def __init__(self, step: str, cause: Exception) -> None:
        super().__init__(f"Harvest step '{step}' failed: {cause}")
        self.step = step
        self.cause = cause


def _tail(text: str, max_lines: int) -> str:
    lines = text.splitlines(keepends=True)
    if len(lines) <= max_lines:
        return text
    return "".join(lines[-max_lines:])


def _serialize(manifest: dict[str, Any]) -> str:
    return json.dumps(manifest, indent=2, default=str)


class ContextHarvester:
    """Builds HarvestedContext bundles from a ClusterReader.

    Raw manifests never leave this class: everything returned has been
    through the RedactionEngine.
    """

    def __init__(self, reader: ClusterReader, redactor: RedactionEngine) -> None:
        self._reader = reader
        self._redactor = redactor

    async def harvest(
        self,
        namespace: str,
        workload: str,
        container: str,
        tail_lines: int = DEFAULT_TAIL_LINES,
    ) -> HarvestedContext:
        """Harvest logs and manifests for *container* in Pod *workload*.

        Raises:
            NotFoundError: the Pod disappeared before it could be read.
            HarvestError:  logs or the Pod manifest could not be read.
        """
        if tail_lines < 1:
            raise ValueError(f"tail_lines must be >= 1, got {tail_lines}")

        try:
            logs = await self._reader.get_container_log_tail(namespace, workload, container, tail_lines)
        except NotFoundError:
            raise
        except ClusterAPIError as exc:
            raise HarvestError("logs", exc) from exc

        try:
            pod = await self._reader.get_manifest(namespace, "Pod", workload)
        except NotFoundError:
            raise
        except ClusterAPIError as exc:
            raise HarvestError("workload_manifest", exc) from exc

        owner, owner_manifest = await self._harvest_owner(namespace, workload, pod)

        return HarvestedContext(
            logs=_tail(logs, tail_lines),
            workload_manifest=self._redactor.redact(_serialize(pod)),
            owner_manifest=owner_manifest,
            owner=owner,
            captured_at=datetime.now(tz=UTC),
        )

    async def _harvest_owner(
        self,
        namespace: str,
        workload: str,
        pod: dict[str, Any],
    ) -> tuple[OwnerReference | None, str | None]:
        """Resolve and fetch the top controller of *pod*; (None, None) on any failure."""
        owner = self._reader.resolve_owner(pod)
        if owner is None:
            _log.debug("owner_not_found", namespace=namespace, pod=workload)
            return None, None

        try:
            manifest = await self._reader.get_manifest(namespace, owner.kind, owner.name)
            if owner.kind in _INTERMEDIATE_KINDS:
                parent = self._reader.resolve_owner(manifest)
                if parent is not None:
                    owner = parent
                    manifest = await self._reader.get_manifest(namespace, parent.kind, parent.name)
        except ClusterAPIError as exc:
            _log.warning(
                "owner_manifest_unavailable",
                namespace=namespace,
                pod=workload,
                owner_kind=owner.kind,
                owner_name=owner.name,
                error=str(exc),
            )
            return None, None

        return owner, self._redactor.redact(_serialize(manifest))
