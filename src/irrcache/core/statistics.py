"""Running statistics of committed ambient values.

The evaluator normalizes its adaptive record radius by the log-average
brightness of all values committed so far. AmbientStatistics accumulates that
average explicitly, so independent builds never share state.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

# CIE luminance weights for linear RGB primaries
CIE_RF = 0.265074126
CIE_GF = 0.670114631
CIE_BF = 0.064811243


def brightness(value: Sequence[float]) -> float:
    """Luminance-weighted brightness of an RGB value."""
    return CIE_RF * value[0] + CIE_GF * value[1] + CIE_BF * value[2]


@dataclass
class AmbientStatistics:
    """Log-sum accumulator over committed ambient values.

    Attributes:
        sum_log: Sum of log(brightness) over contributing values.
        count: Number of values in sum_log.
        record_count: Total number of committed records, including those
            too dark to contribute to sum_log.
        epsilon: Brightness at or below which a value is not folded in.
    """

    sum_log: float = 0.0
    count: int = 0
    record_count: int = 0
    epsilon: float = 1e-6

    def fold(self, value: Sequence[float]) -> bool:
        """Account for one committed record value.

        Args:
            value: RGB value of the committed record.

        Returns:
            True if the value contributed to sum_log and count.
        """
        self.record_count += 1
        b = brightness(value)
        if b <= self.epsilon:
            return False
        self.sum_log += math.log(b)
        self.count += 1
        return True

    @property
    def average(self) -> float:
        """Geometric mean brightness, or 0.0 before any contribution."""
        if self.count == 0:
            return 0.0
        return math.exp(self.sum_log / self.count)

    def snapshot(self) -> tuple[float, int]:
        """Return (sum_log, count) for pushing to the evaluator."""
        return self.sum_log, self.count
