"""Destination handlers for the portal's contract, customer and ETL traffic."""

from __future__ import annotations

from ..domain.routing import RoutingRule, RoutingStrategy
from .contract import ContractEventHandler
from .customer import CustomerEventHandler
from .etl import EtlBatchHandler, EtlCompletionHandler

CONTRACT_CREATED = "contract.created"
CONTRACT_UPDATED = "contract.updated"
CONTRACT_STATUS_CHANGED = "contract.status_changed"
CUSTOMER_CREATED = "customer.created"
CUSTOMER_UPDATED = "customer.updated"
ETL_BATCH = "etl.batch"
ETL_COMPLETE = "etl.complete"

_DIRECT_ROUTES = {
    "CONTRACT_CREATED": CONTRACT_CREATED,
    "CONTRACT_UPDATED": CONTRACT_UPDATED,
    "CONTRACT_STATUS_CHANGED": CONTRACT_STATUS_CHANGED,
    "CUSTOMER_CREATED": CUSTOMER_CREATED,
    "CUSTOMER_UPDATED": CUSTOMER_UPDATED,
    "ETL_BATCH": ETL_BATCH,
    "ETL_COMPLETE": ETL_COMPLETE,
}


def default_routing_rules() -> list[RoutingRule]:
    """One DIRECT rule per portal message type."""
    return [
        RoutingRule(
            id=f"default-{message_type.lower().replace('_', '-')}",
            name=f"{message_type} -> {destination}",
            pattern=message_type,
            strategy=RoutingStrategy.DIRECT,
            destination=destination,
        )
        for message_type, destination in _DIRECT_ROUTES.items()
    ]


__all__ = [
    "CONTRACT_CREATED",
    "CONTRACT_STATUS_CHANGED",
    "CONTRACT_UPDATED",
    "CUSTOMER_CREATED",
    "CUSTOMER_UPDATED",
    "ETL_BATCH",
    "ETL_COMPLETE",
    "ContractEventHandler",
    "CustomerEventHandler",
    "EtlBatchHandler",
    "EtlCompletionHandler",
    "default_routing_rules",
]
