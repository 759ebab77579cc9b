"""Shared fixtures for crashwatch integration tests.

Wires the real classifier, ledger, redaction engine, harvester and
dispatcher together around in-memory cluster and transport doubles so the
full pipeline runs without a cluster or an incident service.
"""

from __future__ import annotations

import pytest

from crashwatch.detector.classifier import FailureClassifier
from crashwatch.dispatch.dispatcher import IncidentDispatcher
from crashwatch.harvester.cluster import ClusterReader
from crashwatch.harvester.context import ContextHarvester
from crashwatch.harvester.redaction import RedactionEngine
from crashwatch.ledger.debounce import DebounceLedger
from crashwatch.models.incidents import OwnerReference
from crashwatch.pipeline import IncidentPipeline
from tests.factories import (
    FakeClock,
    FakeClusterReader,
    RecordingTransport,
    log_lines,
    make_controller,
    make_pod,
)

NAMESPACE = "checkout"
POD = "payment-svc-7d9f8b-x2kj"
REPLICA_SET = OwnerReference("ReplicaSet", "payment-svc-7d9f8b")
DEPLOYMENT = OwnerReference("Deployment", "payment-svc")


# ---------------------------------------------------------------------------
# Cluster state
# ---------------------------------------------------------------------------


@pytest.fixture
def reader() -> FakeClusterReader:
    """payment-svc Pod -> ReplicaSet -> Deployment with secrets in both manifests."""
    return FakeClusterReader(
        manifests={
            ("Pod", POD): make_pod(
                name=POD,
                namespace=NAMESPACE,
                owner=REPLICA_SET,
                env=[
                    {"name": "DB_PASSWORD", "value": "p@ss"},
                    {"name": "DB_HOST", "value": "db.checkout.svc"},
                ],
            ),
            ("ReplicaSet", REPLICA_SET.name): make_controller("ReplicaSet", REPLICA_SET.name, owner=DEPLOYMENT),
            ("Deployment", DEPLOYMENT.name): make_controller(
                "Deployment",
                DEPLOYMENT.name,
                env=[
                    {"name": "STRIPE_SECRET", "value": "sk_live_abc"},
                    {"name": "LOG_LEVEL", "value": "info"},
                ],
            ),
        },
        logs={(POD, "app"): log_lines(500, prefix="panic: payment gateway unreachable")},
    )


# ---------------------------------------------------------------------------
# Pipeline wiring
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger(clock: FakeClock) -> DebounceLedger:
    return DebounceLedger(default_ttl=300.0, clock=clock)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


def build_pipeline(
    reader: ClusterReader,
    ledger: DebounceLedger,
    transport: RecordingTransport,
    tail_lines: int = 200,
) -> IncidentPipeline:
    return IncidentPipeline(
        classifier=FailureClassifier(),
        ledger=ledger,
        harvester=ContextHarvester(reader=reader, redactor=RedactionEngine()),
        dispatcher=IncidentDispatcher(transport),
        tail_lines=tail_lines,
    )


@pytest.fixture
def pipeline(
    reader: FakeClusterReader,
    ledger: DebounceLedger,
    transport: RecordingTransport,
) -> IncidentPipeline:
    return build_pipeline(reader, ledger, transport)
