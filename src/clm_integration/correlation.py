"""Correlation and tenant context carried across async boundaries."""

from __future__ import annotations

import contextlib
import uuid
from contextvars import ContextVar
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)
_tenant_id: ContextVar[str | None] = ContextVar("tenant_id", default=None)


def get_correlation_id() -> str | None:
    """Get current correlation ID from context."""
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None) -> None:
    """Set correlation ID in context."""
    _correlation_id.set(correlation_id)


def get_tenant_id() -> str | None:
    """Get current tenant ID from context."""
    return _tenant_id.get()


def set_tenant_id(tenant_id: str | None) -> None:
    """Set tenant ID in context."""
    _tenant_id.set(tenant_id)


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())


@contextlib.contextmanager
def message_context(
    correlation_id: str | None, tenant_id: str | None
) -> Iterator[None]:
    """Bind correlation/tenant for the duration of one message's processing."""
    corr_token = _correlation_id.set(correlation_id)
    tenant_token = _tenant_id.set(tenant_id)
    try:
        yield
    finally:
        _tenant_id.reset(tenant_token)
        _correlation_id.reset(corr_token)
