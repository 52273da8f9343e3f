"""Domain services the event handlers delegate to.

Contract and customer persistence, and the ETL staging pipeline, live
outside the integration engine; handlers only see these protocols.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class IContractService(Protocol):
    async def find_by_id(
        self, tenant_id: str, contract_id: int
    ) -> dict[str, Any] | None:
        ...

    async def on_activated(self, contract: dict[str, Any]) -> None:
        """Billing setup, notifications."""
        ...

    async def on_cancelled(self, contract: dict[str, Any]) -> None:
        ...

    async def on_completed(self, contract: dict[str, Any]) -> None:
        """Archival, renewal reminders."""
        ...


@runtime_checkable
class ICustomerService(Protocol):
    async def find_by_id(
        self, tenant_id: str, customer_id: int
    ) -> dict[str, Any] | None:
        ...


@runtime_checkable
class IEtlIngestionService(Protocol):
    async def ingest(
        self, tenant_id: str, entity_type: str, records: list[dict[str, Any]]
    ) -> dict[str, Any]:
        """Stage *records* and return counts (``successCount``, ``errorCount``)."""
        ...
