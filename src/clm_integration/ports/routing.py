"""Routing collaborators: decision audit log and unknown-message sink."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..domain.routing import RoutingDecision, UnknownMessage


@runtime_checkable
class IRoutingAuditLog(Protocol):
    """Write-mostly record of every routing decision."""

    async def record(self, decision: RoutingDecision) -> None:
        ...

    async def decisions_for(self, envelope_id: str) -> list[RoutingDecision]:
        ...


@runtime_checkable
class IUnknownMessageSink(Protocol):
    """Messages nothing could handle, kept for manual review."""

    async def store(self, message: UnknownMessage) -> None:
        ...

    async def list_recent(self, limit: int = 100) -> list[UnknownMessage]:
        ...
