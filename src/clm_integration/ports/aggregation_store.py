"""IAggregationStore — versioned aggregation instances keyed by
(correlation id, aggregation key)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import datetime

    from ..domain.aggregation import AggregationInstance, AggregationStatus


@runtime_checkable
class IAggregationStore(Protocol):
    async def get(
        self, correlation_id: str, aggregation_key: str
    ) -> AggregationInstance | None:
        ...

    async def get_by_id(self, instance_id: str) -> AggregationInstance | None:
        ...

    async def insert(self, instance: AggregationInstance) -> None:
        """
        Raises:
            DuplicateKeyError: an instance already exists for the key.
        """
        ...

    async def save(
        self, instance: AggregationInstance, expected_version: int
    ) -> AggregationInstance:
        """Write the instance and its members if the stored version matches.

        Returns the stored copy with ``version = expected_version + 1``.

        Raises:
            OptimisticConcurrencyError: another writer got there first.
        """
        ...

    async def find_expired(
        self, now: datetime, limit: int = 100
    ) -> list[AggregationInstance]:
        """COLLECTING instances with ``timeout_at <= now``, earliest first."""
        ...

    async def find_by_status(
        self, status: AggregationStatus, limit: int = 100
    ) -> list[AggregationInstance]:
        ...
