"""Relational adapters on SQLAlchemy 2 (asyncio)."""

from .aggregation import SQLAlchemyAggregationStore
from .dedup import SQLAlchemyDedupStore
from .envelopes import SQLAlchemyEnvelopeStore
from .models import Base, create_schema
from .routing import SQLAlchemyRoutingAuditLog, SQLAlchemyUnknownMessageSink
from .session import SQLAlchemyStore
from .types import JSONType, UTCDateTime

__all__ = [
    "Base",
    "JSONType",
    "SQLAlchemyAggregationStore",
    "SQLAlchemyDedupStore",
    "SQLAlchemyEnvelopeStore",
    "SQLAlchemyRoutingAuditLog",
    "SQLAlchemyStore",
    "SQLAlchemyUnknownMessageSink",
    "UTCDateTime",
    "create_schema",
]
