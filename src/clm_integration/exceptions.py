"""Error taxonomy for the integration engine."""

from __future__ import annotations


class IntegrationError(Exception):
    """Root exception for the entire integration engine."""


class DomainError(IntegrationError):
    """Base class for errors raised by integration business rules."""


class InfrastructureError(IntegrationError):
    """Base class for all infrastructure-related errors."""


class ConcurrencyError(IntegrationError):
    """Base class for conflicts between concurrent writers.

    Callers catch this to re-read the current state and retry."""


# ── Validation ───────────────────────────────────────────────────────


class ValidationError(DomainError):
    """Raised when an inbound envelope is malformed.

    Rejected before entering the pipeline and never retried.
    Carries structured errors: ``{field: [messages]}``.
    """

    def __init__(self, errors: dict[str, list[str]] | str | None = None) -> None:
        if isinstance(errors, str):
            self.errors: dict[str, list[str]] = {"__root__": [errors]}
        elif errors is None:
            self.errors = {}
        else:
            self.errors = errors
        super().__init__(str(self.errors))


class InvalidTransitionError(DomainError):
    """Raised when a status change is not allowed by the state machine."""

    def __init__(self, entity: str, from_status: str, to_status: str) -> None:
        self.entity = entity
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"{entity} cannot transition from {from_status} to {to_status}"
        )


class EnvelopeNotFoundError(DomainError):
    """Raised when an envelope id is unknown to the store."""

    def __init__(self, envelope_id: str) -> None:
        self.envelope_id = envelope_id
        super().__init__(f"Envelope with id={envelope_id!r} not found")


# ── Routing ──────────────────────────────────────────────────────────


class NoRouteMatchError(DomainError):
    """No active routing rule matched the message.

    The message is parked in the unknown-message sink; it requires a
    configuration fix and is not retried.
    """

    def __init__(self, message_id: str, message_type: str) -> None:
        self.message_id = message_id
        self.message_type = message_type
        super().__init__(
            f"No route for message {message_id!r} of type {message_type!r}"
        )


class ExpressionError(DomainError):
    """Raised when a route or completion expression cannot be evaluated."""


# ── Handlers / retry ─────────────────────────────────────────────────


class HandlerFailure(IntegrationError):
    """Transient failure raised by a destination handler.

    Retried with backoff up to the envelope's ``max_retries``.
    """

    def __init__(self, message: str, *, destination: str | None = None) -> None:
        self.destination = destination
        super().__init__(message)


class HandlerNotFoundError(IntegrationError):
    """Raised when no handler is registered for a routed destination."""

    def __init__(self, destination: str) -> None:
        self.destination = destination
        super().__init__(f"No handler registered for destination {destination!r}")


class RetryExhaustedError(IntegrationError):
    """Raised when an envelope is moved to the dead-letter sink."""

    def __init__(self, message: str, message_id: str | None = None) -> None:
        self.message_id = message_id
        super().__init__(message)


# ── Aggregation ──────────────────────────────────────────────────────


class AggregationError(DomainError):
    """Unrecoverable error while merging aggregation members."""


class DefinitionNotFoundError(DomainError):
    """Raised when no active aggregation definition exists for a key."""

    def __init__(self, aggregation_key: str) -> None:
        self.aggregation_key = aggregation_key
        super().__init__(f"No active aggregation definition for {aggregation_key!r}")


# ── Persistence ──────────────────────────────────────────────────────


class PersistenceError(InfrastructureError):
    """Base class for all persistence-related errors."""


class StoreUnavailableError(PersistenceError):
    """The backing store timed out or refused the operation.

    The operation fails closed: nothing is partially applied and the next
    sweep retries from the last consistent state.
    """


class DuplicateKeyError(ConcurrencyError, PersistenceError):
    """Raised when an insert collides with a uniqueness constraint."""

    def __init__(self, entity: str, key: object) -> None:
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} with key={key!r} already exists")


class OptimisticConcurrencyError(ConcurrencyError, PersistenceError):
    """Raised when a conditional update finds a different status or version."""
