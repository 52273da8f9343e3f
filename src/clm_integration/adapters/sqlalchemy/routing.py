"""
SQLAlchemy routing audit log and unknown-message sink.
"""

from __future__ import annotations

from sqlalchemy import select

from ...domain.routing import RoutingDecision, UnknownMessage
from ...ports.routing import IRoutingAuditLog, IUnknownMessageSink
from .models import RoutingDecisionModel, UnknownMessageModel
from .session import SQLAlchemyStore


class SQLAlchemyRoutingAuditLog(SQLAlchemyStore, IRoutingAuditLog):
    async def record(self, decision: RoutingDecision) -> None:
        async with self.transaction() as session:
            session.add(
                RoutingDecisionModel(
                    id=decision.id,
                    envelope_id=decision.envelope_id,
                    message_type=decision.message_type,
                    rule_id=decision.rule_id,
                    decided_at=decision.decided_at,
                    data=decision.model_dump(mode="json"),
                )
            )

    async def decisions_for(self, envelope_id: str) -> list[RoutingDecision]:
        stmt = (
            select(RoutingDecisionModel)
            .where(RoutingDecisionModel.envelope_id == envelope_id)
            .order_by(RoutingDecisionModel.decided_at, RoutingDecisionModel.id)
        )
        async with self.transaction() as session:
            models = (await session.scalars(stmt)).all()
            return [RoutingDecision.model_validate(m.data) for m in models]


class SQLAlchemyUnknownMessageSink(SQLAlchemyStore, IUnknownMessageSink):
    async def store(self, message: UnknownMessage) -> None:
        async with self.transaction() as session:
            session.add(
                UnknownMessageModel(
                    id=message.id,
                    envelope_id=message.envelope_id,
                    tenant_id=message.tenant_id,
                    message_type=message.message_type,
                    reason=message.reason,
                    received_at=message.received_at,
                    payload=message.payload,
                    headers=message.headers,
                )
            )

    async def list_recent(self, limit: int = 100) -> list[UnknownMessage]:
        stmt = (
            select(UnknownMessageModel)
            .order_by(UnknownMessageModel.received_at.desc())
            .limit(limit)
        )
        async with self.transaction() as session:
            models = (await session.scalars(stmt)).all()
            return [
                UnknownMessage(
                    id=m.id,
                    envelope_id=m.envelope_id,
                    tenant_id=m.tenant_id,
                    message_type=m.message_type,
                    payload=m.payload or {},
                    headers=m.headers or {},
                    reason=m.reason,
                    received_at=m.received_at,
                )
                for m in models
            ]
