"""Protocols for everything the engine talks to."""

from .aggregation_store import IAggregationStore
from .background_worker import IBackgroundWorker
from .config import IConfigSource
from .dedup_store import IDedupStore
from .domain_services import IContractService, ICustomerService, IEtlIngestionService
from .envelope_store import IEnvelopeStore
from .handlers import IEventHandler, IMessageHandler
from .routing import IRoutingAuditLog, IUnknownMessageSink

__all__ = [
    "IAggregationStore",
    "IBackgroundWorker",
    "IConfigSource",
    "IContractService",
    "ICustomerService",
    "IDedupStore",
    "IEnvelopeStore",
    "IEtlIngestionService",
    "IEventHandler",
    "IMessageHandler",
    "IRoutingAuditLog",
    "IUnknownMessageSink",
]
