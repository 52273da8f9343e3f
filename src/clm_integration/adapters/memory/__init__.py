"""Dict-backed adapters. No external dependencies."""

from .aggregation import InMemoryAggregationStore
from .dedup import InMemoryDedupStore
from .envelopes import InMemoryEnvelopeStore
from .routing import (
    InMemoryConfigSource,
    InMemoryRoutingAuditLog,
    InMemoryUnknownMessageSink,
)

__all__ = [
    "InMemoryAggregationStore",
    "InMemoryConfigSource",
    "InMemoryDedupStore",
    "InMemoryEnvelopeStore",
    "InMemoryRoutingAuditLog",
    "InMemoryUnknownMessageSink",
]
