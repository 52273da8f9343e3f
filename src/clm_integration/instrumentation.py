"""Instrumentation hooks wrapped around every top-level engine operation."""

from __future__ import annotations

import fnmatch
import logging
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .correlation import get_tenant_id

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger("clm_integration.instrumentation")


@runtime_checkable
class InstrumentationHook(Protocol):
    """Protocol for instrumentation hooks (tracing, metrics, structured logs)."""

    async def __call__(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Wrap an operation with instrumentation."""
        ...


class HookRegistration:
    """A registered hook scoped by operation pattern and, optionally, tenant."""

    def __init__(
        self,
        hook: InstrumentationHook,
        *,
        priority: int = 0,
        operations: list[str] | None = None,
        tenants: list[str] | None = None,
        enabled: bool = True,
    ) -> None:
        self.hook = hook
        self.priority = priority
        self.operations = operations or []
        self.tenants = frozenset(tenants or ())
        self.enabled = enabled

    def matches(self, operation: str, attributes: dict[str, Any]) -> bool:
        if not self.enabled:
            return False
        if self.tenants:
            # Attributes win; sweeps carry no tenant and fall back to context.
            tenant = attributes.get("tenant_id") or get_tenant_id()
            if tenant not in self.tenants:
                return False
        if not self.operations:
            return True
        return any(fnmatch.fnmatch(operation, pattern) for pattern in self.operations)


class HookRegistry:
    """Ordered chain of hooks; lower priority runs outermost."""

    def __init__(self) -> None:
        self._registrations: list[HookRegistration] = []

    def register(
        self,
        hook: InstrumentationHook,
        *,
        priority: int = 0,
        operations: list[str] | None = None,
        tenants: list[str] | None = None,
        enabled: bool = True,
    ) -> HookRegistration:
        """Register a hook, optionally limited to fnmatch operation patterns
        and to the messages of specific tenants.
        """
        registration = HookRegistration(
            hook,
            priority=priority,
            operations=operations,
            tenants=tenants,
            enabled=enabled,
        )
        self._registrations.append(registration)
        self._registrations.sort(key=lambda r: r.priority)
        return registration

    async def execute_all(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run *next_handler* inside every matching hook."""
        matching = [
            r for r in self._registrations if r.matches(operation, attributes)
        ]
        if not matching:
            return await next_handler()

        async def pipeline(index: int = 0) -> Any:
            if index >= len(matching):
                return await next_handler()
            return await matching[index].hook(
                operation,
                attributes,
                lambda: pipeline(index + 1),
            )

        return await pipeline()

    def unregister(self, registration: HookRegistration) -> None:
        self._registrations = [
            r for r in self._registrations if r is not registration
        ]

    def clear(self) -> None:
        self._registrations.clear()


_hook_registry_var: ContextVar[HookRegistry | None] = ContextVar(
    "hook_registry", default=None
)


def get_hook_registry() -> HookRegistry:
    """Get the hook registry for the current context.

    A fresh registry is created on first access within each context, so
    tests never leak hooks into each other.
    """
    registry = _hook_registry_var.get()
    if registry is None:
        registry = HookRegistry()
        _hook_registry_var.set(registry)
    return registry


def set_hook_registry(registry: HookRegistry) -> None:
    """Install a custom hook registry in the current context."""
    _hook_registry_var.set(registry)
