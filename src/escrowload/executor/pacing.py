"""Inter-cycle pacing."""

from __future__ import annotations


class RateController:
    """Computes how long to wait before the next cycle start.

    The ideal gap between starts is ``1000 / target_rate`` ms; time already
    spent since the previous start is subtracted, and the result never drops
    below ``min_delay_ms``.
    """

    def __init__(self, min_delay_ms: float = 1.0):
        if min_delay_ms < 0:
            raise ValueError("min_delay_ms must be >= 0")
        self.min_delay_ms = min_delay_ms

    @staticmethod
    def interval_ms(target_rate: float) -> float:
        if target_rate <= 0:
            raise ValueError("target_rate must be greater than 0")
        return 1000.0 / target_rate

    def next_delay(self, last_cycle_duration_ms: float, target_rate: float) -> float:
        residual = self.interval_ms(target_rate) - max(last_cycle_duration_ms, 0.0)
        return max(residual, self.min_delay_ms, 0.0)
