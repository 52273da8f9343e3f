"""ETL batch ingestion and staging-completion notifications."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..domain.events import OutcomeKind, ProcessingOutcome
from ..exceptions import NoRouteMatchError, ValidationError
from .payload import require_str, tenant_of

if TYPE_CHECKING:
    from collections.abc import Sequence

    from ..domain.envelope import MessageEnvelope
    from ..ports.domain_services import IEtlIngestionService

logger = logging.getLogger("clm_integration.handlers.etl")

ENTITY_TYPES = frozenset({"CONTRACT", "CUSTOMER"})


class EtlBatchHandler:
    """
    Splits an ETL_BATCH by ``entityType`` into contract or customer ingestion.

    An entity type nobody ingests raises ``NoRouteMatchError`` so the batch
    lands in the unknown-message sink instead of being retried.
    """

    def __init__(self, ingestion: IEtlIngestionService) -> None:
        self._ingestion = ingestion

    async def handle(
        self, envelope: MessageEnvelope
    ) -> Sequence[ProcessingOutcome] | None:
        payload = envelope.payload
        entity_type = str(
            payload.get("entityType") or envelope.routing_key or ""
        ).upper()
        if entity_type not in ENTITY_TYPES:
            logger.warning(
                "Unknown entity type %r in ETL batch %s", entity_type, envelope.id
            )
            raise NoRouteMatchError(envelope.id, f"ETL_BATCH:{entity_type}")

        tenant_id = tenant_of(payload, envelope.tenant_id)
        records = payload.get("records") or []
        if not isinstance(records, list) or not all(
            isinstance(r, dict) for r in records
        ):
            raise ValidationError({"records": ["must be a list of objects"]})

        logger.info(
            "Processing ETL batch %s with %d %s record(s)",
            envelope.id,
            len(records),
            entity_type,
        )
        counts = await self._ingestion.ingest(tenant_id, entity_type, records)
        return [
            ProcessingOutcome(
                subject="ETL_BATCH",
                kind=OutcomeKind.COMPLETED,
                payload={
                    "tenantId": tenant_id,
                    "entityType": entity_type,
                    "sessionId": payload.get("sessionId"),
                    "recordCount": len(records),
                    "successCount": int(counts.get("successCount", 0)),
                    "errorCount": int(counts.get("errorCount", 0)),
                },
                envelope_id=envelope.id,
                correlation_id=envelope.correlation_id,
                tenant_id=tenant_id,
            )
        ]


class EtlCompletionHandler:
    """Turns an ETL_COMPLETE message into an ``ETL_SESSION_COMPLETED`` event."""

    async def handle(
        self, envelope: MessageEnvelope
    ) -> Sequence[ProcessingOutcome] | None:
        payload = envelope.payload
        session_id = require_str(payload, "sessionId")
        summary: dict[str, Any] = {
            "sessionId": session_id,
            "recordCount": payload.get("recordCount", 0),
            "successCount": payload.get("successCount", 0),
            "errorCount": payload.get("errorCount", 0),
        }
        logger.info(
            "ETL session %s complete: %s/%s succeeded, %s error(s)",
            session_id,
            summary["successCount"],
            summary["recordCount"],
            summary["errorCount"],
        )
        return [
            ProcessingOutcome(
                subject="ETL_SESSION",
                kind=OutcomeKind.COMPLETED,
                payload=summary,
                envelope_id=envelope.id,
                correlation_id=envelope.correlation_id,
                tenant_id=envelope.tenant_id,
            )
        ]
