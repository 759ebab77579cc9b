"""Incident pipeline: classify -> debounce -> harvest -> redact -> dispatch.

``IncidentPipeline.reconcile`` is invoked once per observed Pod state change
and may run concurrently for the same Pod. The ledger's atomic
``try_acquire`` guarantees a single winner per failure signature.

Ledger entries are never rolled back: a harvest or dispatch failure still
counts as "reported" for the cooldown window, trading a missed incident for
guaranteed duplicate suppression.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

import structlog

from crashwatch.detector.classifier import FailureClassifier
from crashwatch.dispatch.dispatcher import IncidentDispatcher
from crashwatch.dispatch.transport import DispatchError
from crashwatch.harvester.cluster import NotFoundError
from crashwatch.harvester.context import DEFAULT_TAIL_LINES, ContextHarvester, HarvestError
from crashwatch.ledger.debounce import DebounceLedger
from crashwatch.models.incidents import FailureSignature, WorkloadSnapshot

_log = structlog.get_logger(component="pipeline")


class PipelineOutcome(StrEnum):
    """Result classification handed back to the scheduler."""

    IDLE = "idle"
    SUPPRESSED = "suppressed"
    DISPATCHED = "dispatched"
    IGNORED = "ignored"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass
class PipelineResult:
    """Outcome of one reconcile plus the incidents it sent."""

    outcome: PipelineOutcome
    incident_ids: list[str] = field(default_factory=list)
    error: Exception | None = None

    @property
    def retryable(self) -> bool:
        """True when the scheduler may re-deliver the event later."""
        return self.outcome == PipelineOutcome.TRANSIENT_FAILURE


class IncidentPipeline:
    """Drives one reconcile through every pipeline stage.

    Args:
        classifier:  Decides which containers are reportable.
        ledger:      Shared debounce ledger (constructed once per process).
        harvester:   Collects logs and redacted manifests.
        dispatcher:  Sends the incident record.
        ttl:         Debounce cooldown in seconds; defaults to the ledger's.
        tail_lines:  Log lines to harvest per incident.
    """

    def __init__(
        self,
        classifier: FailureClassifier,
        ledger: DebounceLedger,
        harvester: ContextHarvester,
        dispatcher: IncidentDispatcher,
        ttl: float | None = None,
        tail_lines: int = DEFAULT_TAIL_LINES,
    ) -> None:
        self._classifier = classifier
        self._ledger = ledger
        self._harvester = harvester
        self._dispatcher = dispatcher
        self._ttl = ttl
        self._tail_lines = tail_lines

    async def reconcile(self, snapshot: WorkloadSnapshot) -> PipelineResult:
        """Report every new reportable failure in *snapshot*.

        The first failing signature aborts the remaining ones.
        """
        signatures = self._classifier.classify(snapshot)
        if not signatures:
            return PipelineResult(outcome=PipelineOutcome.IDLE)

        incident_ids: list[str] = []
        for signature in signatures:
            log = _log.bind(
                namespace=signature.namespace,
                pod=signature.workload,
                container=signature.container,
                reason=str(signature.reason),
            )
            log.info("failure_detected")

            if not self._ledger.try_acquire(signature.key, self._ttl):
                log.info("incident_debounced", key=signature.key)
                continue

            try:
                incident_ids.append(await self._report(signature))
            except NotFoundError as exc:
                log.info("workload_gone", error=str(exc))
                return PipelineResult(outcome=PipelineOutcome.IGNORED, incident_ids=incident_ids)
            except HarvestError as exc:
                log.error("harvest_failed", step=exc.step, error=str(exc.cause))
                return PipelineResult(
                    outcome=PipelineOutcome.TRANSIENT_FAILURE,
                    incident_ids=incident_ids,
                    error=exc,
                )
            except DispatchError as exc:
                outcome = PipelineOutcome.TRANSIENT_FAILURE if exc.transient else PipelineOutcome.PERMANENT_FAILURE
                return PipelineResult(outcome=outcome, incident_ids=incident_ids, error=exc)

        if not incident_ids:
            return PipelineResult(outcome=PipelineOutcome.SUPPRESSED)
        return PipelineResult(outcome=PipelineOutcome.DISPATCHED, incident_ids=incident_ids)

    async def _report(self, signature: FailureSignature) -> str:
        context = await self._harvester.harvest(
            signature.namespace,
            signature.workload,
            signature.container,
            self._tail_lines,
        )
        record = self._dispatcher.build_record(signature, context)
        await self._dispatcher.dispatch(record)
        return record.incident_id
