"""Incident data structures shared by the detection pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class FailureReason(StrEnum):
    """Container failure states that are reported as incidents."""

    CRASH_LOOP_BACKOFF = "CrashLoopBackOff"
    IMAGE_PULL_BACKOFF = "ImagePullBackOff"
    ERR_IMAGE_PULL = "ErrImagePull"
    OOM_KILLED = "OOMKilled"


@dataclass(frozen=True)
class FailureSignature:
    """Identity of one ongoing container failure.

    Two observations with the same (namespace, workload, container, reason)
    inside the cooldown window are the same incident.
    """

    namespace: str
    workload: str
    container: str
    reason: FailureReason

    @property
    def key(self) -> str:
        """Deterministic debounce ledger key."""
        return f"{self.namespace}/{self.workload}/{self.container}/{self.reason}"


@dataclass(frozen=True)
class WorkloadSnapshot:
    """Observed status of a Pod at the moment of one state change."""

    namespace: str
    name: str
    container_statuses: list[dict[str, Any]] = field(default_factory=list)
    init_container_statuses: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_pod(cls, raw: dict[str, Any]) -> WorkloadSnapshot:
        """Build a snapshot from a raw (camelCase) Pod object.

        A Pod whose status has not been populated yet yields empty
        status lists.
        """
        metadata = raw.get("metadata") or {}
        status = raw.get("status") or {}
        return cls(
            namespace=str(metadata.get("namespace", "")),
            name=str(metadata.get("name", "")),
            container_statuses=list(status.get("containerStatuses") or []),
            init_container_statuses=list(status.get("initContainerStatuses") or []),
        )


@dataclass(frozen=True)
class OwnerReference:
    """A (kind, name) pointer to a controlling resource."""

    kind: str
    name: str


@dataclass(frozen=True)
class HarvestedContext:
    """Diagnostic bundle for one incident.

    Manifests are always redacted. ``owner_manifest`` is None when the Pod
    has no resolvable owner or the owner could not be fetched.
    """

    logs: str
    workload_manifest: str
    owner_manifest: str | None = None
    owner: OwnerReference | None = None
    captured_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


@dataclass(frozen=True)
class IncidentRecord:
    """Wire-level incident payload, sent once and then discarded."""

    incident_id: str
    workload_name: str
    namespace: str
    container_name: str
    failure_reason: str
    logs: str
    workload_manifest_json: str
    owner_manifest_json: str
    captured_at: datetime

    def to_payload(self) -> dict[str, str]:
        """Serialise to a plain dict for JSON encoding."""
        return {
            "incident_id": self.incident_id,
            "workload_name": self.workload_name,
            "namespace": self.namespace,
            "container_name": self.container_name,
            "failure_reason": self.failure_reason,
            "logs": self.logs,
            "workload_manifest_json": self.workload_manifest_json,
            "owner_manifest_json": self.owner_manifest_json,
            "timestamp": self.captured_at.astimezone(UTC).isoformat(),
        }


@dataclass(frozen=True)
class DispatchReceipt:
    """Acknowledgement returned by the incident service."""

    status: str
    receipt_id: str = ""
