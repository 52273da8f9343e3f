"""Contract lifecycle notifications."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..domain.events import OutcomeKind, ProcessingOutcome
from ..exceptions import NoRouteMatchError
from .payload import require_int, tenant_of

if TYPE_CHECKING:
    from collections.abc import Sequence

    from ..domain.envelope import MessageEnvelope
    from ..ports.domain_services import IContractService

logger = logging.getLogger("clm_integration.handlers.contract")

_KINDS = {
    "CONTRACT_CREATED": OutcomeKind.CREATED,
    "CONTRACT_UPDATED": OutcomeKind.UPDATED,
    "CONTRACT_STATUS_CHANGED": OutcomeKind.STATUS_CHANGED,
}


class ContractEventHandler:
    """
    Handles CONTRACT_CREATED, CONTRACT_UPDATED and CONTRACT_STATUS_CHANGED.

    Looks the contract up through the contract service; a contract that no
    longer exists is logged and skipped. Status changes into ACTIVE,
    CANCELLED or COMPLETED trigger the matching service hook.
    """

    def __init__(self, service: IContractService) -> None:
        self._service = service

    async def handle(
        self, envelope: MessageEnvelope
    ) -> Sequence[ProcessingOutcome] | None:
        kind = _KINDS.get(envelope.message_type)
        if kind is None:
            raise NoRouteMatchError(envelope.id, envelope.message_type)

        payload = envelope.payload
        tenant_id = tenant_of(payload, envelope.tenant_id)
        contract_id = require_int(payload, "contractId")

        contract = await self._service.find_by_id(tenant_id, contract_id)
        if contract is None:
            logger.warning(
                "[%s] Contract %s not found for tenant %s",
                envelope.message_type,
                contract_id,
                tenant_id,
            )
            return None

        event_payload: dict[str, Any] = {
            "tenantId": tenant_id,
            "contractId": contract_id,
            "contract": contract,
        }
        if kind == OutcomeKind.STATUS_CHANGED:
            old_status = payload.get("oldStatus")
            new_status = payload.get("newStatus")
            logger.info(
                "Contract status transition: %s -> %s for contract %s",
                old_status,
                new_status,
                contract.get("contractNumber", contract_id),
            )
            await self._on_status(new_status, contract)
            event_payload.update({"oldStatus": old_status, "newStatus": new_status})

        logger.info(
            "[%s] Contract: %s (ID: %s, Status: %s)",
            envelope.message_type,
            contract.get("contractNumber"),
            contract_id,
            contract.get("status"),
        )
        return [
            ProcessingOutcome(
                subject="CONTRACT",
                kind=kind,
                payload=event_payload,
                envelope_id=envelope.id,
                correlation_id=envelope.correlation_id,
                tenant_id=tenant_id,
            )
        ]

    async def _on_status(self, new_status: Any, contract: dict[str, Any]) -> None:
        if new_status == "ACTIVE":
            await self._service.on_activated(contract)
        elif new_status == "CANCELLED":
            await self._service.on_cancelled(contract)
        elif new_status == "COMPLETED":
            await self._service.on_completed(contract)
