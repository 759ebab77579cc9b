"""Core data structures for crashwatch."""

from crashwatch.models.config import CrashWatchConfig
from crashwatch.models.incidents import (
    DispatchReceipt,
    FailureReason,
    FailureSignature,
    HarvestedContext,
    IncidentRecord,
    OwnerReference,
    WorkloadSnapshot,
)

__all__ = [
    "CrashWatchConfig",
    "DispatchReceipt",
    "FailureReason",
    "FailureSignature",
    "HarvestedContext",
    "IncidentRecord",
    "OwnerReference",
    "WorkloadSnapshot",
]
