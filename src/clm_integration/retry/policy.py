"""RetryPolicy — exponential backoff with a cap and banded jitter."""

from __future__ import annotations

import math
import random
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..config import RetrySettings


class RetryPolicy:
    """Exponential backoff: ``min(base_delay * multiplier^(n-1), max_delay)``.

    Jitter draws the delay for retry *n* uniformly from
    ``[nominal(n-1), nominal(n)]`` (``[nominal(1)/multiplier, nominal(1)]``
    for the first retry). Successive delays therefore never decrease and
    never exceed ``max_delay``, while concurrent failures still spread out.
    """

    def __init__(
        self,
        *,
        base_delay: float = 1.0,
        multiplier: float = 2.0,
        max_delay: float = 60.0,
        jitter: bool = True,
        rng: random.Random | None = None,
    ) -> None:
        """Configure backoff.

        Args:
            base_delay: Delay in seconds before the first retry.
            multiplier: Growth factor per retry (>= 1).
            max_delay: Cap on any single delay in seconds.
            jitter: Spread delays within their band to avoid thundering herd.
            rng: Random source (seed it in tests).
        """
        if base_delay < 0 or max_delay < 0:
            raise ValueError("base_delay and max_delay must be >= 0")
        if base_delay > max_delay:
            raise ValueError("base_delay must be <= max_delay")
        if multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self._rng = rng or random.Random()  # noqa: S311
        self._cap_exponent = 0
        if base_delay > 0 and multiplier > 1:
            self._cap_exponent = (
                math.ceil(math.log(max_delay / base_delay, multiplier)) + 1
            )

    @classmethod
    def from_settings(
        cls, settings: RetrySettings, *, rng: random.Random | None = None
    ) -> RetryPolicy:
        return cls(
            base_delay=settings.base_delay_seconds,
            multiplier=settings.multiplier,
            max_delay=settings.max_delay_seconds,
            jitter=settings.jitter,
            rng=rng,
        )

    def nominal_delay(self, retry: int) -> float:
        """Un-jittered delay for the 1-based *retry*."""
        if retry < 1 or self.base_delay == 0:
            return 0.0
        exponent = retry - 1
        if self.multiplier > 1:
            # Beyond the cap the power only grows toward float overflow.
            exponent = min(exponent, self._cap_exponent)
        return float(min(self.base_delay * self.multiplier**exponent, self.max_delay))

    def delay_for_attempt(self, retry: int) -> float:
        """Delay in seconds before the 1-based *retry*."""
        upper = self.nominal_delay(retry)
        if not self.jitter or upper <= 0:
            return upper
        if retry == 1:
            lower = upper / self.multiplier
        else:
            lower = self.nominal_delay(retry - 1)
        return lower + (upper - lower) * self._rng.random()
