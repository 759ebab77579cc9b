"""Harvester layer for crashwatch.

Gathers the diagnostic context of a failing container. Only redacted
manifests leave this package.

Submodules:
    cluster    -- ClusterReader protocol and the kubernetes-asyncio implementation.
    redaction  -- Textual secret redaction for serialized manifests.
    context    -- ContextHarvester: logs, Pod manifest, owning controller manifest.
"""

from crashwatch.harvester.cluster import (
    ClusterAPIError,
    ClusterReader,
    KubernetesClusterReader,
    NotFoundError,
)
from crashwatch.harvester.context import DEFAULT_TAIL_LINES, ContextHarvester, HarvestError
from crashwatch.harvester.redaction import RedactionEngine, RedactionRuleError

__all__ = [
    "ClusterAPIError",
    "ClusterReader",
    "ContextHarvester",
    "DEFAULT_TAIL_LINES",
    "HarvestError",
    "KubernetesClusterReader",
    "NotFoundError",
    "RedactionEngine",
    "RedactionRuleError",
]
