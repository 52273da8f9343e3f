"""Payload field checks shared by the domain event handlers."""

from __future__ import annotations

from typing import Any

from ..exceptions import ValidationError


def require_str(payload: dict[str, Any], field: str) -> str:
    value = payload.get(field)
    if not isinstance(value, str) or not value:
        raise ValidationError({field: ["must be a non-empty string"]})
    return value


def require_int(payload: dict[str, Any], field: str) -> int:
    value = payload.get(field)
    # bool is an int subclass; a JSON true is not an id.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError({field: ["must be a number"]})
    if isinstance(value, float) and not value.is_integer():
        raise ValidationError({field: ["must be a whole number"]})
    return int(value)


def tenant_of(payload: dict[str, Any], fallback: str | None) -> str:
    """``tenantId`` from the payload, else the envelope's tenant header."""
    if "tenantId" not in payload and fallback:
        return fallback
    return require_str(payload, "tenantId")
