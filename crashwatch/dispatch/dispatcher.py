"""Incident dispatcher for crashwatch.

Packages a FailureSignature and its HarvestedContext into an IncidentRecord
and hands it to the transport exactly once. There is no retry loop and no
local queue: a failed send surfaces as DispatchError and the record is
dropped.
"""

from __future__ import annotations

from uuid import uuid4

import structlog

from crashwatch.dispatch.transport import DispatchError, IncidentTransport
from crashwatch.models.incidents import (
    DispatchReceipt,
    FailureSignature,
    HarvestedContext,
    IncidentRecord,
)

_log = structlog.get_logger(component="dispatch.dispatcher")


class IncidentDispatcher:
    """Sends one IncidentRecord per call through an IncidentTransport."""

    def __init__(self, transport: IncidentTransport) -> None:
        self._transport = transport

    @staticmethod
    def build_record(signature: FailureSignature, context: HarvestedContext) -> IncidentRecord:
        """Combine *signature* and *context* into a wire record.

        The incident id embeds the capture time and a random suffix so it is
        unique per dispatch attempt.
        """
        incident_id = (
            f"{signature.workload}-{signature.container}-{signature.reason}"
            f"-{int(context.captured_at.timestamp())}-{uuid4().hex[:8]}"
        )
        return IncidentRecord(
            incident_id=incident_id,
            workload_name=signature.workload,
            namespace=signature.namespace,
            container_name=signature.container,
            failure_reason=str(signature.reason),
            logs=context.logs,
            workload_manifest_json=context.workload_manifest,
            owner_manifest_json=context.owner_manifest or "",
            captured_at=context.captured_at,
        )

    async def dispatch(self, record: IncidentRecord) -> DispatchReceipt:
        """Transmit *record* once and return the service acknowledgement.

        Raises:
            DispatchError: the transport or the service rejected the record.
        """
        try:
            receipt = await self._transport.send(record)
        except DispatchError as exc:
            _log.error(
                "incident_dispatch_failed",
                incident_id=record.incident_id,
                namespace=record.namespace,
                pod=record.workload_name,
                code=str(exc.code),
                transient=exc.transient,
                error=exc.message,
            )
            raise

        _log.info(
            "incident_dispatched",
            incident_id=record.incident_id,
            namespace=record.namespace,
            pod=record.workload_name,
            reason=record.failure_reason,
            status=receipt.status,
            receipt_id=receipt.receipt_id,
        )
        return receipt
