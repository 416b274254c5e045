# src/flipstat/compute/stats.py
"""Small numeric helpers shared by the price and exposure calculations."""

import math
from typing import Optional, Sequence

import numpy as np


def round_half_away(value: float) -> int:
    """Round to the nearest integer, halves away from zero (2.5 -> 3, -2.5 -> -3)."""
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


def compute_median(values: Sequence[float]) -> Optional[int]:
    """Compute median of a list, returning None if empty.

    Even-length lists average the two middle values before rounding.
    """
    if not values:
        return None
    return round_half_away(float(np.median(values)))


def compute_mean(values: Sequence[float]) -> Optional[float]:
    """Arithmetic mean, None if empty."""
    if not values:
        return None
    return float(np.mean(values))


def days_between(start, end) -> float:
    """Fractional days from start to end (negative if end is earlier)."""
    return (end - start).total_seconds() / 86400
