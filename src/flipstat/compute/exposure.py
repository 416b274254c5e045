# src/flipstat/compute/exposure.py
"""Exposure (days on market) statistics for a subsegment.

Exposure counts the days between an object first being seen and it leaving
the market. Only sold, evaluated objects are sampled; price and area are not
required.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

from flipstat.compute.reference_price import as_snapshot
from flipstat.compute.stats import compute_mean, compute_median, days_between, round_half_away
from flipstat.models import RealEstateObject

logger = logging.getLogger(__name__)

MIN_EXPOSURE_DAYS = 1


@dataclass
class ExposureResult:
    """Exposure statistics. None fields mean no sample."""

    median_days: Optional[int]
    average_days: Optional[int]
    min_days: Optional[int]
    max_days: Optional[int]
    sample_count: int

    @property
    def is_empty(self) -> bool:
        return self.sample_count == 0


def calculate_exposure_days(obj: RealEstateObject) -> Optional[int]:
    """
    Whole days from created to updated, never less than one.

    Same-day and out-of-order timestamps count as one day.

    Returns:
        Days on market, or None if either timestamp is missing
    """
    if obj.created is None or obj.updated is None:
        return None
    days = math.floor(days_between(obj.created, obj.updated))
    return max(MIN_EXPOSURE_DAYS, days)


def get_exposure_sample(
    objects: Sequence[RealEstateObject],
    evaluations,
) -> List[int]:
    """
    Exposure days of every sold, evaluated object with both timestamps.

    Objects whose tag carries no weight are left out, as for the reference
    price.

    Raises:
        UnknownEvaluationTagError: An evaluation tag has no weight
    """
    snapshot = as_snapshot(evaluations)
    sample = []
    for obj in objects:
        if not obj.is_sold:
            continue
        tag = snapshot.get(obj.id)
        if tag is None or snapshot.weight_of(tag) <= 0:
            continue
        days = calculate_exposure_days(obj)
        if days is None:
            logger.debug(f"Object {obj.id}: missing created/updated, skipped for exposure")
            continue
        sample.append(days)
    return sample


def compute_exposure(
    objects: Sequence[RealEstateObject],
    evaluations,
) -> ExposureResult:
    """
    Compute median/average/min/max days on market.

    Args:
        objects: Objects already scoped to one subsegment
        evaluations: EvaluationStore or EvaluationSnapshot

    Returns:
        ExposureResult with None fields when nothing is eligible
    """
    days = sorted(get_exposure_sample(objects, evaluations))

    if not days:
        return ExposureResult(
            median_days=None,
            average_days=None,
            min_days=None,
            max_days=None,
            sample_count=0,
        )

    return ExposureResult(
        median_days=compute_median(days),
        average_days=round_half_away(compute_mean(days)),
        min_days=days[0],
        max_days=days[-1],
        sample_count=len(days),
    )
