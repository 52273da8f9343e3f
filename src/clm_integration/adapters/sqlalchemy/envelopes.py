"""
SQLAlchemy implementation of the envelope store and its transition log.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from ...domain.envelope import (
    IN_FLIGHT_STATUSES,
    EnvelopeStatus,
    MessageEnvelope,
    StateTransition,
)
from ...exceptions import (
    DuplicateKeyError,
    EnvelopeNotFoundError,
    OptimisticConcurrencyError,
)
from ...ports.envelope_store import IEnvelopeStore
from .models import EnvelopeModel, EnvelopeTransitionModel
from .session import SQLAlchemyStore

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession


def _columns(envelope: MessageEnvelope) -> dict[str, Any]:
    return {
        "message_type": envelope.message_type,
        "tenant_id": envelope.tenant_id,
        "correlation_id": envelope.correlation_id,
        "status": envelope.status,
        "retry_count": envelope.retry_count,
        "max_retries": envelope.max_retries,
        "next_retry_at": envelope.next_retry_at,
        "created_at": envelope.created_at,
        "updated_at": envelope.updated_at or envelope.created_at,
        "data": envelope.model_dump(mode="json"),
        "version": envelope.version,
    }


def _transition_model(transition: StateTransition) -> EnvelopeTransitionModel:
    return EnvelopeTransitionModel(
        envelope_id=transition.envelope_id,
        from_status=transition.from_status.value if transition.from_status else None,
        to_status=transition.to_status.value,
        at=transition.at,
        reason=transition.reason,
        error_code=transition.error_code,
        error_message=transition.error_message,
        actor=transition.actor,
    )


class SQLAlchemyEnvelopeStore(SQLAlchemyStore, IEnvelopeStore):
    """
    Envelope persistence with status compare-and-set.

    The conditional ``UPDATE ... WHERE status = :expected AND version = :v``
    and the transition row commit in one transaction.
    """

    async def insert(
        self, envelope: MessageEnvelope, transition: StateTransition
    ) -> None:
        try:
            async with self.transaction() as session:
                session.add(EnvelopeModel(id=envelope.id, **_columns(envelope)))
                await session.flush()
                session.add(_transition_model(transition))
        except IntegrityError as exc:
            raise DuplicateKeyError("MessageEnvelope", envelope.id) from exc

    async def get(self, envelope_id: str) -> MessageEnvelope | None:
        async with self.transaction() as session:
            model = await session.get(EnvelopeModel, envelope_id)
            return self.from_model(model) if model is not None else None

    async def compare_and_set(
        self,
        envelope_id: str,
        expected_status: EnvelopeStatus,
        changes: dict[str, Any],
        transition: StateTransition,
    ) -> MessageEnvelope:
        async with self.transaction() as session:
            current = await self._load(session, envelope_id)
            if current.status != expected_status:
                raise OptimisticConcurrencyError(
                    f"Envelope {envelope_id} is {current.status.value}, "
                    f"expected {expected_status.value}"
                )
            updated = MessageEnvelope.model_validate(
                {
                    **current.model_dump(),
                    **changes,
                    "version": current.version + 1,
                    "updated_at": transition.at,
                }
            )
            stmt = (
                update(EnvelopeModel)
                .where(
                    EnvelopeModel.id == envelope_id,
                    EnvelopeModel.status == expected_status,
                    EnvelopeModel.version == current.version,
                )
                .values(**_columns(updated))
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            if result.rowcount != 1:
                raise OptimisticConcurrencyError(
                    f"Envelope {envelope_id} changed concurrently"
                )
            session.add(_transition_model(transition))
            return updated

    async def find_due_retries(
        self, now: datetime, limit: int = 100
    ) -> list[MessageEnvelope]:
        stmt = (
            select(EnvelopeModel)
            .where(
                EnvelopeModel.status == EnvelopeStatus.FAILED,
                EnvelopeModel.next_retry_at.is_not(None),
                EnvelopeModel.next_retry_at <= now,
                EnvelopeModel.retry_count < EnvelopeModel.max_retries,
            )
            .order_by(EnvelopeModel.next_retry_at, EnvelopeModel.id)
            .limit(limit)
        )
        async with self.transaction() as session:
            result = await session.execute(stmt)
            return [self.from_model(m) for m in result.scalars().all()]

    async def find_stalled(
        self, before: datetime, limit: int = 100
    ) -> list[MessageEnvelope]:
        stmt = (
            select(EnvelopeModel)
            .where(
                EnvelopeModel.status.in_(list(IN_FLIGHT_STATUSES)),
                EnvelopeModel.updated_at <= before,
            )
            .order_by(EnvelopeModel.updated_at, EnvelopeModel.id)
            .limit(limit)
        )
        async with self.transaction() as session:
            result = await session.execute(stmt)
            return [self.from_model(m) for m in result.scalars().all()]

    async def find_by_status(
        self, status: EnvelopeStatus, limit: int = 100, offset: int = 0
    ) -> list[MessageEnvelope]:
        stmt = (
            select(EnvelopeModel)
            .where(EnvelopeModel.status == status)
            .order_by(EnvelopeModel.created_at, EnvelopeModel.id)
            .limit(limit)
            .offset(offset)
        )
        async with self.transaction() as session:
            result = await session.execute(stmt)
            return [self.from_model(m) for m in result.scalars().all()]

    async def transitions(self, envelope_id: str) -> list[StateTransition]:
        stmt = (
            select(EnvelopeTransitionModel)
            .where(EnvelopeTransitionModel.envelope_id == envelope_id)
            .order_by(EnvelopeTransitionModel.id)
        )
        async with self.transaction() as session:
            result = await session.execute(stmt)
            return [
                StateTransition(
                    envelope_id=m.envelope_id,
                    from_status=(
                        EnvelopeStatus(m.from_status) if m.from_status else None
                    ),
                    to_status=EnvelopeStatus(m.to_status),
                    at=m.at,
                    reason=m.reason,
                    error_code=m.error_code,
                    error_message=m.error_message,
                    actor=m.actor,
                )
                for m in result.scalars().all()
            ]

    async def _load(self, session: AsyncSession, envelope_id: str) -> MessageEnvelope:
        model = await session.get(EnvelopeModel, envelope_id)
        if model is None:
            raise EnvelopeNotFoundError(envelope_id)
        return self.from_model(model)

    @staticmethod
    def from_model(model: EnvelopeModel) -> MessageEnvelope:
        return MessageEnvelope.model_validate({**model.data, "version": model.version})
