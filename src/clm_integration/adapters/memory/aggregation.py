"""In-memory aggregation store."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ...domain.aggregation import AggregationInstance, AggregationStatus
from ...exceptions import DuplicateKeyError, OptimisticConcurrencyError
from ...ports.aggregation_store import IAggregationStore

if TYPE_CHECKING:
    from datetime import datetime


class InMemoryAggregationStore(IAggregationStore):
    """Dict-backed :class:`IAggregationStore` with version-checked saves."""

    def __init__(self) -> None:
        self._instances: dict[str, AggregationInstance] = {}
        self._by_key: dict[tuple[str, str], str] = {}

    async def get(
        self, correlation_id: str, aggregation_key: str
    ) -> AggregationInstance | None:
        instance_id = self._by_key.get((correlation_id, aggregation_key))
        if instance_id is None:
            return None
        return self._instances[instance_id].model_copy(deep=True)

    async def get_by_id(self, instance_id: str) -> AggregationInstance | None:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance is not None else None

    async def insert(self, instance: AggregationInstance) -> None:
        if instance.key in self._by_key:
            raise DuplicateKeyError("AggregationInstance", instance.key)
        self._instances[instance.id] = instance.model_copy(deep=True)
        self._by_key[instance.key] = instance.id

    async def save(
        self, instance: AggregationInstance, expected_version: int
    ) -> AggregationInstance:
        stored = self._instances.get(instance.id)
        if stored is None or stored.version != expected_version:
            raise OptimisticConcurrencyError(
                f"AggregationInstance {instance.id} changed since "
                f"version {expected_version}"
            )
        updated = instance.model_copy(
            update={"version": expected_version + 1}, deep=True
        )
        self._instances[instance.id] = updated
        return updated.model_copy(deep=True)

    async def find_expired(
        self, now: datetime, limit: int = 100
    ) -> list[AggregationInstance]:
        expired = sorted(
            (
                i
                for i in self._instances.values()
                if i.status == AggregationStatus.COLLECTING and i.timeout_at <= now
            ),
            key=lambda i: (i.timeout_at, i.id),
        )
        return [i.model_copy(deep=True) for i in expired[:limit]]

    async def find_by_status(
        self, status: AggregationStatus, limit: int = 100
    ) -> list[AggregationInstance]:
        matching = [i for i in self._instances.values() if i.status == status]
        matching.sort(key=lambda i: (i.started_at, i.id))
        return [i.model_copy(deep=True) for i in matching[:limit]]

    def all_instances(self) -> list[AggregationInstance]:
        return [i.model_copy(deep=True) for i in self._instances.values()]
