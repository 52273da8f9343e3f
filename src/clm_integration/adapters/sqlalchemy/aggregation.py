"""
SQLAlchemy implementation of the aggregation store.

Instances live in ``integration_aggregations``; members are append-only
rows in ``integration_aggregation_members``, unique per
``(instance_id, sequence_number)``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from ...domain.aggregation import (
    AggregationInstance,
    AggregationMember,
    AggregationStatus,
)
from ...exceptions import DuplicateKeyError, OptimisticConcurrencyError
from ...ports.aggregation_store import IAggregationStore
from .models import AggregationInstanceModel, AggregationMemberModel
from .session import SQLAlchemyStore

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession


def _columns(instance: AggregationInstance) -> dict[str, Any]:
    return {
        "correlation_id": instance.correlation_id,
        "aggregation_key": instance.aggregation_key,
        "definition_id": instance.definition_id,
        "status": instance.status,
        "started_at": instance.started_at,
        "timeout_at": instance.timeout_at,
        "data": instance.model_dump(mode="json", exclude={"members"}),
    }


def _member_models(
    instance_id: str, members: Iterable[AggregationMember]
) -> list[AggregationMemberModel]:
    return [
        AggregationMemberModel(
            instance_id=instance_id,
            sequence_number=m.sequence_number,
            envelope_id=m.envelope_id,
            message_sequence=m.message_sequence,
            received_at=m.received_at,
            payload=m.payload,
            included=m.included,
            exclusion_reason=m.exclusion_reason,
        )
        for m in members
    ]


class SQLAlchemyAggregationStore(SQLAlchemyStore, IAggregationStore):
    async def get(
        self, correlation_id: str, aggregation_key: str
    ) -> AggregationInstance | None:
        stmt = select(AggregationInstanceModel).where(
            AggregationInstanceModel.correlation_id == correlation_id,
            AggregationInstanceModel.aggregation_key == aggregation_key,
        )
        async with self.transaction() as session:
            model = await session.scalar(stmt)
            return await self._hydrate(session, model) if model is not None else None

    async def get_by_id(self, instance_id: str) -> AggregationInstance | None:
        async with self.transaction() as session:
            model = await session.get(AggregationInstanceModel, instance_id)
            return await self._hydrate(session, model) if model is not None else None

    async def insert(self, instance: AggregationInstance) -> None:
        try:
            async with self.transaction() as session:
                session.add(
                    AggregationInstanceModel(
                        id=instance.id, version=instance.version, **_columns(instance)
                    )
                )
                await session.flush()
                session.add_all(_member_models(instance.id, instance.members))
                await session.flush()
        except IntegrityError as exc:
            raise DuplicateKeyError("AggregationInstance", instance.key) from exc

    async def save(
        self, instance: AggregationInstance, expected_version: int
    ) -> AggregationInstance:
        updated = instance.model_copy(update={"version": expected_version + 1})
        stmt = (
            update(AggregationInstanceModel)
            .where(
                AggregationInstanceModel.id == instance.id,
                AggregationInstanceModel.version == expected_version,
            )
            .values(version=expected_version + 1, **_columns(updated))
            .execution_options(synchronize_session=False)
        )
        try:
            async with self.transaction() as session:
                result = await session.execute(stmt)
                if result.rowcount != 1:
                    raise OptimisticConcurrencyError(
                        f"AggregationInstance {instance.id} changed since "
                        f"version {expected_version}"
                    )
                stored = set(
                    (
                        await session.scalars(
                            select(AggregationMemberModel.sequence_number).where(
                                AggregationMemberModel.instance_id == instance.id
                            )
                        )
                    ).all()
                )
                new_members = [
                    m for m in instance.members if m.sequence_number not in stored
                ]
                session.add_all(_member_models(instance.id, new_members))
                await session.flush()
        except IntegrityError as exc:
            raise OptimisticConcurrencyError(
                f"AggregationInstance {instance.id} members changed concurrently"
            ) from exc
        return updated

    async def find_expired(
        self, now: datetime, limit: int = 100
    ) -> list[AggregationInstance]:
        stmt = (
            select(AggregationInstanceModel)
            .where(
                AggregationInstanceModel.status == AggregationStatus.COLLECTING,
                AggregationInstanceModel.timeout_at <= now,
            )
            .order_by(AggregationInstanceModel.timeout_at, AggregationInstanceModel.id)
            .limit(limit)
        )
        return await self._find(stmt)

    async def find_by_status(
        self, status: AggregationStatus, limit: int = 100
    ) -> list[AggregationInstance]:
        stmt = (
            select(AggregationInstanceModel)
            .where(AggregationInstanceModel.status == status)
            .order_by(AggregationInstanceModel.started_at, AggregationInstanceModel.id)
            .limit(limit)
        )
        return await self._find(stmt)

    async def _find(self, stmt: Any) -> list[AggregationInstance]:
        async with self.transaction() as session:
            models = (await session.scalars(stmt)).all()
            return [await self._hydrate(session, m) for m in models]

    @staticmethod
    async def _hydrate(
        session: AsyncSession, model: AggregationInstanceModel
    ) -> AggregationInstance:
        rows = await session.scalars(
            select(AggregationMemberModel)
            .where(AggregationMemberModel.instance_id == model.id)
            .order_by(AggregationMemberModel.sequence_number)
        )
        members = [
            AggregationMember(
                envelope_id=r.envelope_id,
                sequence_number=r.sequence_number,
                message_sequence=r.message_sequence,
                received_at=r.received_at,
                payload=r.payload or {},
                included=r.included,
                exclusion_reason=r.exclusion_reason,
            )
            for r in rows.all()
        ]
        return AggregationInstance.model_validate(
            {**model.data, "members": members, "version": model.version}
        )
