"""Failure classifier.

Turns the container statuses of a Pod snapshot into the set of
FailureSignatures that should be reported. Pure: never touches the
ledger or the network.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from crashwatch.models.incidents import FailureReason, FailureSignature, WorkloadSnapshot

REPORTABLE_REASONS: frozenset[FailureReason] = frozenset(FailureReason)

_WAITING_REASONS = frozenset(
    {
        FailureReason.CRASH_LOOP_BACKOFF,
        FailureReason.IMAGE_PULL_BACKOFF,
        FailureReason.ERR_IMAGE_PULL,
    }
)
_TERMINATED_REASONS = frozenset({FailureReason.OOM_KILLED})


def _state_reason(status: dict[str, Any], phase: str) -> str:
    state = status.get("state") or {}
    detail = state.get(phase) or {}
    return str(detail.get("reason") or "")


class FailureClassifier:
    """Classifies container statuses against an allow-list of reasons."""

    def __init__(self, reasons: Iterable[FailureReason] = REPORTABLE_REASONS) -> None:
        self._reasons = frozenset(reasons)
        if FailureReason.CRASH_LOOP_BACKOFF not in self._reasons:
            raise ValueError("CrashLoopBackOff must be a reportable reason")

    @property
    def reasons(self) -> frozenset[FailureReason]:
        return self._reasons

    def classify(self, snapshot: WorkloadSnapshot) -> list[FailureSignature]:
        """Return one signature per container currently in a reportable state.

        Regular containers come first, then init containers. A waiting
        reason takes precedence over a terminated one.
        """
        signatures: list[FailureSignature] = []
        for status in [*snapshot.container_statuses, *snapshot.init_container_statuses]:
            name = status.get("name")
            if not name:
                continue
            reason = self._reportable_reason(status)
            if reason is None:
                continue
            signatures.append(
                FailureSignature(
                    namespace=snapshot.namespace,
                    workload=snapshot.name,
                    container=str(name),
                    reason=reason,
                )
            )
        return signatures

    def _reportable_reason(self, status: dict[str, Any]) -> FailureReason | None:
        waiting = _state_reason(status, "waiting")
        if waiting in _WAITING_REASONS and waiting in self._reasons:
            return FailureReason(waiting)
        terminated = _state_reason(status, "terminated")
        if terminated in _TERMINATED_REASONS and terminated in self._reasons:
            return FailureReason(terminated)
        return None


_default = FailureClassifier()


def classify(snapshot: WorkloadSnapshot) -> list[FailureSignature]:
    """Classify *snapshot* with the full set of reportable reasons."""
    return _default.classify(snapshot)
