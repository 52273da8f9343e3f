"""Domain models of the integration engine."""

from .aggregation import (
    AddMemberResult,
    AggregationDefinition,
    AggregationInstance,
    AggregationMember,
    AggregationStatus,
    AggregationStrategy,
    CompletionStrategy,
    MemberOutcome,
)
from .dedup import DedupRecord, DedupResult, GuardOutcome
from .envelope import (
    IN_FLIGHT_STATUSES,
    EnvelopeStatus,
    InboundMessage,
    MessageEnvelope,
    StateTransition,
    can_transition,
)
from .events import IntegrationEvent, OutcomeKind, ProcessingOutcome
from .routing import (
    RoutingDecision,
    RoutingRule,
    RoutingStrategy,
    RuleEvaluation,
    UnknownMessage,
)

__all__ = [
    "IN_FLIGHT_STATUSES",
    "AddMemberResult",
    "AggregationDefinition",
    "AggregationInstance",
    "AggregationMember",
    "AggregationStatus",
    "AggregationStrategy",
    "CompletionStrategy",
    "DedupRecord",
    "DedupResult",
    "EnvelopeStatus",
    "GuardOutcome",
    "InboundMessage",
    "IntegrationEvent",
    "MemberOutcome",
    "MessageEnvelope",
    "OutcomeKind",
    "ProcessingOutcome",
    "RoutingDecision",
    "RoutingRule",
    "RoutingStrategy",
    "RuleEvaluation",
    "StateTransition",
    "UnknownMessage",
    "can_transition",
]
