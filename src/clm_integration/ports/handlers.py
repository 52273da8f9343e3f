"""Destination handlers and downstream event handlers."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..domain.envelope import MessageEnvelope
    from ..domain.events import IntegrationEvent, ProcessingOutcome


@runtime_checkable
class IMessageHandler(Protocol):
    """Executes a routed envelope at its destination.

    Raise ``HandlerFailure`` (or any exception) for a transient failure that
    should be retried, ``ValidationError`` for a payload that can never
    succeed. Return outcomes to publish, or None.
    """

    async def handle(
        self, envelope: MessageEnvelope
    ) -> Sequence[ProcessingOutcome] | None:
        ...


@runtime_checkable
class IEventHandler(Protocol):
    """Downstream consumer of published integration events."""

    async def handle(self, event: IntegrationEvent) -> None:
        ...
