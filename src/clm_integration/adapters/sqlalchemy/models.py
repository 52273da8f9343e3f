"""
SQLAlchemy models for the integration engine's persistent state.

Indexed columns carry what the stores filter and compare-and-set on; the
``data`` column holds the full document the domain model is rebuilt from.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, Enum, Integer, String, Text, UniqueConstraint
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ...domain.aggregation import AggregationStatus
from ...domain.envelope import EnvelopeStatus
from .types import JSONType, UTCDateTime


class Base(DeclarativeBase):
    """Declarative base for the integration tables."""


class EnvelopeModel(Base):
    __tablename__ = "integration_envelopes"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    message_type: Mapped[str] = mapped_column(String(50), index=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    correlation_id: Mapped[str | None] = mapped_column(
        String, nullable=True, index=True
    )
    status: Mapped[EnvelopeStatus] = mapped_column(Enum(EnvelopeStatus), index=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    next_retry_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSONType)
    version: Mapped[int] = mapped_column(Integer, default=0)


class EnvelopeTransitionModel(Base):
    """Append-only transition log; ``id`` order is write order."""

    __tablename__ = "integration_envelope_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    envelope_id: Mapped[str] = mapped_column(String, index=True)
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20))
    at: Mapped[datetime] = mapped_column(UTCDateTime)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    actor: Mapped[str] = mapped_column(String, default="system")


class DedupRecordModel(Base):
    __tablename__ = "integration_dedup"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "content_hash", "message_type", name="uq_dedup_content"
        ),
        UniqueConstraint(
            "tenant_id", "business_key", "message_type", name="uq_dedup_business_key"
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String)
    message_type: Mapped[str] = mapped_column(String(50))
    content_hash: Mapped[str] = mapped_column(String(64))
    business_key: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSONType)
    version: Mapped[int] = mapped_column(Integer, default=0)


class AggregationInstanceModel(Base):
    __tablename__ = "integration_aggregations"
    __table_args__ = (
        UniqueConstraint(
            "correlation_id", "aggregation_key", name="uq_aggregation_key"
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    correlation_id: Mapped[str] = mapped_column(String)
    aggregation_key: Mapped[str] = mapped_column(String)
    definition_id: Mapped[str] = mapped_column(String)
    status: Mapped[AggregationStatus] = mapped_column(
        Enum(AggregationStatus), index=True
    )
    started_at: Mapped[datetime] = mapped_column(UTCDateTime)
    timeout_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSONType)
    version: Mapped[int] = mapped_column(Integer, default=0)


class AggregationMemberModel(Base):
    __tablename__ = "integration_aggregation_members"
    __table_args__ = (
        UniqueConstraint(
            "instance_id", "sequence_number", name="uq_aggregation_member_seq"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instance_id: Mapped[str] = mapped_column(String, index=True)
    sequence_number: Mapped[int] = mapped_column(Integer)
    envelope_id: Mapped[str] = mapped_column(String, index=True)
    message_sequence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType)
    included: Mapped[bool] = mapped_column(Boolean, default=True)
    exclusion_reason: Mapped[str | None] = mapped_column(String, nullable=True)


class RoutingDecisionModel(Base):
    __tablename__ = "integration_routing_decisions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    envelope_id: Mapped[str] = mapped_column(String, index=True)
    message_type: Mapped[str] = mapped_column(String(50))
    rule_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    decided_at: Mapped[datetime] = mapped_column(UTCDateTime)
    data: Mapped[dict[str, Any]] = mapped_column(JSONType)


class UnknownMessageModel(Base):
    __tablename__ = "integration_unknown_messages"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    envelope_id: Mapped[str] = mapped_column(String, index=True)
    tenant_id: Mapped[str] = mapped_column(String)
    message_type: Mapped[str] = mapped_column(String(50))
    reason: Mapped[str] = mapped_column(String)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType)
    headers: Mapped[dict[str, Any]] = mapped_column(JSONType)


async def create_schema(engine: AsyncEngine) -> None:
    """Create every integration table that does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
