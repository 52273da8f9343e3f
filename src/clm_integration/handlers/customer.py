"""Customer lifecycle notifications."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..domain.events import OutcomeKind, ProcessingOutcome
from ..exceptions import NoRouteMatchError
from .payload import require_int, tenant_of

if TYPE_CHECKING:
    from collections.abc import Sequence

    from ..domain.envelope import MessageEnvelope
    from ..ports.domain_services import ICustomerService

logger = logging.getLogger("clm_integration.handlers.customer")

_KINDS = {
    "CUSTOMER_CREATED": OutcomeKind.CREATED,
    "CUSTOMER_UPDATED": OutcomeKind.UPDATED,
}


class CustomerEventHandler:
    def __init__(self, service: ICustomerService) -> None:
        self._service = service

    async def handle(
        self, envelope: MessageEnvelope
    ) -> Sequence[ProcessingOutcome] | None:
        kind = _KINDS.get(envelope.message_type)
        if kind is None:
            raise NoRouteMatchError(envelope.id, envelope.message_type)

        tenant_id = tenant_of(envelope.payload, envelope.tenant_id)
        customer_id = require_int(envelope.payload, "customerId")

        customer = await self._service.find_by_id(tenant_id, customer_id)
        if customer is None:
            logger.warning(
                "[%s] Customer %s not found for tenant %s",
                envelope.message_type,
                customer_id,
                tenant_id,
            )
            return None

        logger.info(
            "[%s] Customer: %s (ID: %s)",
            envelope.message_type,
            customer.get("customerCode") or customer.get("name"),
            customer_id,
        )
        return [
            ProcessingOutcome(
                subject="CUSTOMER",
                kind=kind,
                payload={
                    "tenantId": tenant_id,
                    "customerId": customer_id,
                    "customer": customer,
                },
                envelope_id=envelope.id,
                correlation_id=envelope.correlation_id,
                tenant_id=tenant_id,
            )
        ]
