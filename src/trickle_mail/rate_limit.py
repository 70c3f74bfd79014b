# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Rate-interval policy for paced delivery.

A job's recipients are sent one at a time, ``rate_interval`` seconds apart.
The interval is configured per user and bounded by what the provider
accepts: only a fraction (20%) of the provider's maximum send rate is used,
leaving headroom for other traffic, and the interval may not exceed one
hour.

Example:
    Planning the fire times of a job::

        policy = RateIntervalPolicy(max_send_rate=14)
        policy.validate(60)
        fire_times = policy.plan(now_ts, count=3, interval=60)
        # [now_ts, now_ts + 60, now_ts + 120]
"""

import math

from .errors import ValidationError

MAX_RATE_INTERVAL = 3600
SEND_RATE_SHARE = 0.2


class RateIntervalPolicy:
    """Bounds and plans the spacing between consecutive sends of a job.

    Attributes:
        max_send_rate: Provider maximum send rate in messages per second.
    """

    def __init__(self, max_send_rate: float = 1.0):
        self.max_send_rate = max_send_rate if max_send_rate > 0 else 1.0

    def min_interval(self) -> int:
        """Smallest allowed interval in whole seconds (20% of the max send rate)."""
        return max(1, math.ceil(1 / (self.max_send_rate * SEND_RATE_SHARE)))

    def validate(self, interval: int) -> int:
        """Check a configured interval.

        Raises:
            ValidationError: If the interval is outside
                ``[min_interval(), MAX_RATE_INTERVAL]``.
        """
        low = self.min_interval()
        if not isinstance(interval, int) or isinstance(interval, bool) or not low <= interval <= MAX_RATE_INTERVAL:
            raise ValidationError(
                f"Rate limit must be between {low} and {MAX_RATE_INTERVAL} seconds "
                f"(provider max send rate: {self.max_send_rate}/sec, using "
                f"{int(SEND_RATE_SHARE * 100)}% = {1 / low:.3g}/sec)"
            )
        return interval

    @staticmethod
    def plan(start_ts: float, count: int, interval: float) -> list[int]:
        """Fire times (epoch seconds) for ``count`` sends starting at ``start_ts``."""
        return [int(start_ts + index * interval) for index in range(count)]
