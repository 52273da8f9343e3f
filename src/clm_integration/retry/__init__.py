"""Retry bookkeeping and backoff."""

from .policy import RetryPolicy
from .scheduler import RetryScheduler

__all__ = ["RetryPolicy", "RetryScheduler"]
