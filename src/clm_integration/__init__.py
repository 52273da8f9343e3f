"""clm-integration — message integration engine for the contract/customer portal."""

from .aggregation import Aggregator
from .config import ConfigProvider, ConfigSnapshot, IntegrationSettings
from .correlation import get_correlation_id, get_tenant_id, message_context
from .dead_letter import DeadLetterHandler
from .domain import (
    AggregationDefinition,
    AggregationStatus,
    EnvelopeStatus,
    InboundMessage,
    IntegrationEvent,
    MessageEnvelope,
    ProcessingOutcome,
    RoutingRule,
    RoutingStrategy,
)
from .engine import IntegrationEngine
from .exceptions import (
    IntegrationError,
    NoRouteMatchError,
    OptimisticConcurrencyError,
    StoreUnavailableError,
    ValidationError,
)
from .idempotency import IdempotencyGuard
from .pipeline import IngestResult, IngestStatus, IntegrationPipeline
from .publisher import EventPublisher
from .retry import RetryPolicy, RetryScheduler
from .routing import Router
from .workers import AggregationTimeoutWorker, RetrySweepWorker

__version__ = "0.1.0"

__all__ = [
    "AggregationDefinition",
    "AggregationStatus",
    "AggregationTimeoutWorker",
    "Aggregator",
    "ConfigProvider",
    "ConfigSnapshot",
    "DeadLetterHandler",
    "EnvelopeStatus",
    "EventPublisher",
    "IdempotencyGuard",
    "InboundMessage",
    "IngestResult",
    "IngestStatus",
    "IntegrationEngine",
    "IntegrationError",
    "IntegrationEvent",
    "IntegrationPipeline",
    "IntegrationSettings",
    "MessageEnvelope",
    "NoRouteMatchError",
    "OptimisticConcurrencyError",
    "ProcessingOutcome",
    "RetryPolicy",
    "RetryScheduler",
    "RetrySweepWorker",
    "Router",
    "RoutingRule",
    "RoutingStrategy",
    "StoreUnavailableError",
    "ValidationError",
    "get_correlation_id",
    "get_tenant_id",
    "message_context",
]
