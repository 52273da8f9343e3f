"""Message aggregation."""

from .aggregator import Aggregator
from .strategies import MergerRegistry, merge, order_members

__all__ = ["Aggregator", "MergerRegistry", "merge", "order_members"]
