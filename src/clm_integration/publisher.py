"""EventPublisher — fan processing outcomes out to downstream handlers."""

from __future__ import annotations

import fnmatch
import logging
from typing import TYPE_CHECKING

from .domain.events import IntegrationEvent
from .instrumentation import get_hook_registry
from .utils import utc_now

if TYPE_CHECKING:
    from .domain.events import ProcessingOutcome
    from .ports.handlers import IEventHandler
    from .utils import Clock

logger = logging.getLogger("clm_integration.publisher")


class _Subscription:
    def __init__(self, handler: IEventHandler, event_types: list[str]) -> None:
        self.handler = handler
        self.event_types = event_types

    def matches(self, event_type: str) -> bool:
        if not self.event_types:
            return True
        return any(fnmatch.fnmatchcase(event_type, p) for p in self.event_types)


class EventPublisher:
    """
    Wraps each outcome into ``{eventId, eventType, timestamp, payload}`` and
    hands it to every subscribed handler.

    Pure fan-out: no business decisions, and a failing handler is logged
    without affecting the other handlers or the caller.
    """

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock or utc_now
        self._subscriptions: list[_Subscription] = []

    def subscribe(
        self, handler: IEventHandler, event_types: list[str] | None = None
    ) -> None:
        """Subscribe *handler* to event types (fnmatch patterns; all if None)."""
        self._subscriptions.append(_Subscription(handler, event_types or []))

    def unsubscribe(self, handler: IEventHandler) -> None:
        self._subscriptions = [s for s in self._subscriptions if s.handler is not handler]

    async def publish(self, outcome: ProcessingOutcome) -> IntegrationEvent:
        payload = dict(outcome.payload)
        if outcome.envelope_id is not None:
            payload.setdefault("envelopeId", outcome.envelope_id)
        event = IntegrationEvent(
            event_type=outcome.event_type,
            timestamp=self._clock(),
            payload=payload,
            correlation_id=outcome.correlation_id,
            tenant_id=outcome.tenant_id,
        )

        async def _fan_out() -> IntegrationEvent:
            delivered = 0
            for subscription in list(self._subscriptions):
                if not subscription.matches(event.event_type):
                    continue
                try:
                    await subscription.handler.handle(event)
                    delivered += 1
                except Exception as exc:  # noqa: BLE001
                    logger.error(
                        "Handler %s failed for event %s (%s): %s",
                        type(subscription.handler).__name__,
                        event.event_id,
                        event.event_type,
                        exc,
                    )
            logger.debug(
                "Published %s %s to %d handler(s)",
                event.event_type,
                event.event_id,
                delivered,
            )
            return event

        try:
            return await get_hook_registry().execute_all(
                f"publisher.publish.{event.event_type}",
                {
                    "event_type": event.event_type,
                    "event_id": event.event_id,
                    "correlation_id": event.correlation_id,
                },
                _fan_out,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Publishing %s failed: %s", event.event_type, exc)
            return event
