"""Routing rules, routing decisions and the unknown-message record."""

from __future__ import annotations

import fnmatch
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RoutingStrategy(str, Enum):
    DIRECT = "DIRECT"
    CONTENT_BASED = "CONTENT_BASED"
    MULTICAST = "MULTICAST"
    RECIPIENT_LIST = "RECIPIENT_LIST"
    DYNAMIC = "DYNAMIC"
    AGGREGATOR = "AGGREGATOR"


# Strategies that resolve to the full target set rather than one destination.
FAN_OUT_STRATEGIES = frozenset(
    {RoutingStrategy.MULTICAST, RoutingStrategy.RECIPIENT_LIST}
)


class RoutingRule(BaseModel):
    """A versioned, prioritized routing rule.

    ``pattern`` and ``namespace`` are shell-style globs matched against the
    message type and namespace. Read-only to the engine.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    version: int = 1
    name: str | None = None
    pattern: str
    namespace: str | None = None
    strategy: RoutingStrategy = RoutingStrategy.DIRECT
    destination: str | None = None
    destinations: tuple[str, ...] = ()
    recipients_path: str | None = None
    expression: dict[str, Any] | None = None
    failover_destination: str | None = None
    transformation_ref: str | None = None
    priority: int = 100
    active: bool = True
    effective_from: datetime | None = None
    effective_until: datetime | None = None

    @model_validator(mode="after")
    def _check_targets(self) -> RoutingRule:
        strategy = self.strategy
        if strategy == RoutingStrategy.MULTICAST and not self.destinations:
            raise ValueError("MULTICAST rule requires destinations")
        if strategy == RoutingStrategy.RECIPIENT_LIST and not self.recipients_path:
            raise ValueError("RECIPIENT_LIST rule requires recipients_path")
        if strategy == RoutingStrategy.CONTENT_BASED and not self.expression:
            raise ValueError("CONTENT_BASED rule requires an expression")
        if (
            strategy
            in (
                RoutingStrategy.DIRECT,
                RoutingStrategy.CONTENT_BASED,
                RoutingStrategy.DYNAMIC,
                RoutingStrategy.AGGREGATOR,
            )
            and not self.destination
        ):
            raise ValueError(f"{strategy.value} rule requires a destination")
        return self

    def is_effective(self, now: datetime) -> bool:
        if not self.active:
            return False
        if self.effective_from is not None and now < self.effective_from:
            return False
        return not (self.effective_until is not None and now >= self.effective_until)

    def matches_pattern(self, message_type: str, namespace: str | None) -> bool:
        if not fnmatch.fnmatchcase(message_type, self.pattern):
            return False
        if self.namespace is None:
            return True
        return namespace is not None and fnmatch.fnmatchcase(namespace, self.namespace)

    @property
    def specificity(self) -> int:
        """Literal characters in the patterns; exact types beat wildcards."""
        literal = sum(1 for ch in self.pattern if ch not in "*?[]")
        if self.namespace:
            literal += sum(1 for ch in self.namespace if ch not in "*?[]")
        return literal

    def sort_key(self) -> tuple[int, int, str]:
        return (-self.priority, -self.specificity, self.id)


class RuleEvaluation(BaseModel):
    """One rule considered while routing, for the audit trail."""

    model_config = ConfigDict(frozen=True)

    rule_id: str
    rule_version: int
    matched: bool
    reason: str | None = None


class RoutingDecision(BaseModel):
    """Outcome of routing one envelope, matched or not.

    Snapshots the winning rule so later configuration edits do not change
    what the audit trail says was applied.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    envelope_id: str
    message_type: str
    rule_id: str | None = None
    rule_version: int | None = None
    matched_pattern: str | None = None
    strategy: RoutingStrategy | None = None
    destinations: tuple[str, ...] = ()
    failover_destination: str | None = None
    rule_snapshot: dict[str, Any] | None = None
    alternatives_evaluated: tuple[RuleEvaluation, ...] = ()
    evaluation_ms: float = 0.0
    decided_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def matched(self) -> bool:
        return self.rule_id is not None

    @property
    def destination(self) -> str | None:
        return self.destinations[0] if self.destinations else None


class UnknownMessage(BaseModel):
    """A message parked for manual review because nothing could handle it."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    envelope_id: str
    tenant_id: str
    message_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, Any] = Field(default_factory=dict)
    reason: str = "no_route"
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
