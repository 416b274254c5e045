# src/flipstat/compute/reference_price.py
"""Reference price per square meter for a subsegment.

Only sold (archived), evaluated objects with a known price and area count.
Each one is weighted by its evaluation weight times a recency factor that
decays linearly from 1.0 to a floor over a horizon:

    recency = max(floor, 1 - days_since_update / horizon_days)

The reference price is the weighted mean of price per meter. The
representative area is the plain mean of areas.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from flipstat.compute.evaluations import EvaluationSnapshot
from flipstat.compute.stats import compute_mean, days_between, round_half_away
from flipstat.models import RealEstateObject, parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_RECENCY_FLOOR = 0.7
DEFAULT_RECENCY_HORIZON_DAYS = 365


@dataclass(frozen=True)
class RecencyPolicy:
    """Recency decay parameters."""

    floor: float = DEFAULT_RECENCY_FLOOR
    horizon_days: float = DEFAULT_RECENCY_HORIZON_DAYS

    def __post_init__(self):
        if not 0 < self.floor <= 1:
            raise ValueError(f"Recency floor must be in (0, 1], got {self.floor}")
        if self.horizon_days <= 0:
            raise ValueError(f"Recency horizon must be positive, got {self.horizon_days}")


def load_recency_from_config(config: dict) -> RecencyPolicy:
    """Load recency parameters from the 'recency' section of config.yml."""
    recency_config = config.get('recency', {}) or {}
    return RecencyPolicy(
        floor=float(recency_config.get('floor', DEFAULT_RECENCY_FLOOR)),
        horizon_days=float(recency_config.get('horizon_days', DEFAULT_RECENCY_HORIZON_DAYS)),
    )


@dataclass
class ReferencePriceResult:
    """Reference price for one subsegment. None prices mean no evaluated sales."""

    subsegment_id: Optional[str]
    segment_name: Optional[str]
    per_meter_price: Optional[int]
    total_price: Optional[int]
    representative_area: Optional[float]
    total_object_count: int
    evaluated_object_count: int
    # Transparency fields
    oldest_sale_date: Optional[datetime] = None
    newest_sale_date: Optional[datetime] = None

    @property
    def is_empty(self) -> bool:
        return self.per_meter_price is None


@dataclass
class WeightedSale:
    """Individual sale with its pricing weight."""

    object_id: str
    tag: str
    price: int
    area: float
    price_per_meter: float
    sale_date: Optional[datetime]
    days_since_update: float
    recency_factor: float
    adjusted_weight: float


def calculate_recency_factor(
    days_since_update: float,
    policy: Optional[RecencyPolicy] = None,
) -> float:
    """
    Calculate recency factor - newer sales get higher weight.

    Args:
        days_since_update: Days between the sale and as_of (negative treated as 0)
        policy: Decay parameters (default floor 0.7, horizon 365 days)

    Returns:
        Factor between policy.floor and 1.0
    """
    policy = policy or RecencyPolicy()
    days = max(0.0, days_since_update)
    return max(policy.floor, 1 - days / policy.horizon_days)


def calculate_adjusted_weight(
    quality_weight: float,
    days_since_update: float,
    policy: Optional[RecencyPolicy] = None,
) -> float:
    """Evaluation weight scaled by recency."""
    return quality_weight * calculate_recency_factor(days_since_update, policy)


def as_snapshot(evaluations) -> EvaluationSnapshot:
    """Accept an EvaluationStore or a ready snapshot."""
    if isinstance(evaluations, EvaluationSnapshot):
        return evaluations
    return evaluations.snapshot()


def get_weighted_sales(
    objects: Sequence[RealEstateObject],
    evaluations,
    as_of: datetime,
    policy: Optional[RecencyPolicy] = None,
) -> List[WeightedSale]:
    """
    Apply the eligibility filter and compute each eligible sale's weight.

    Eligible: archived, evaluated, positive weight, positive price and area.

    Raises:
        UnknownEvaluationTagError: An object carries a tag with no weight
    """
    snapshot = as_snapshot(evaluations)
    as_of = parse_timestamp(as_of)
    weighted = []

    for obj in objects:
        if not obj.is_sold:
            continue
        tag = snapshot.get(obj.id)
        if tag is None:
            continue
        quality_weight = snapshot.weight_of(tag)
        if quality_weight <= 0:
            continue
        if obj.current_price <= 0 or obj.area_total <= 0:
            continue

        sale_date = obj.updated or obj.created
        if sale_date is not None:
            days = days_between(sale_date, as_of)
        else:
            # Undated sale: weight it as if it were past the horizon
            days = (policy or RecencyPolicy()).horizon_days
        recency = calculate_recency_factor(days, policy)

        weighted.append(WeightedSale(
            object_id=obj.id,
            tag=tag,
            price=obj.current_price,
            area=obj.area_total,
            price_per_meter=obj.current_price / obj.area_total,
            sale_date=sale_date,
            days_since_update=days,
            recency_factor=recency,
            adjusted_weight=quality_weight * recency,
        ))

    return weighted


def compute_reference_price(
    objects: Sequence[RealEstateObject],
    evaluations,
    as_of: datetime,
    policy: Optional[RecencyPolicy] = None,
    subsegment_id: Optional[str] = None,
    segment_name: Optional[str] = None,
) -> ReferencePriceResult:
    """
    Compute the reference price for a pre-filtered subsegment population.

    Args:
        objects: Objects already scoped to one subsegment
        evaluations: EvaluationStore or EvaluationSnapshot
        as_of: Reference timestamp (never read from the clock here)
        policy: Recency decay parameters
        subsegment_id: Carried into the result
        segment_name: Carried into the result

    Returns:
        ReferencePriceResult; price fields are None when nothing is eligible

    Raises:
        UnknownEvaluationTagError: An object carries a tag with no weight
    """
    sales = get_weighted_sales(objects, evaluations, as_of, policy)
    total_weight = sum(s.adjusted_weight for s in sales)

    if not sales or total_weight <= 0:
        return ReferencePriceResult(
            subsegment_id=subsegment_id,
            segment_name=segment_name,
            per_meter_price=None,
            total_price=None,
            representative_area=None,
            total_object_count=len(objects),
            evaluated_object_count=0,
        )

    weighted_per_meter = sum(s.price_per_meter * s.adjusted_weight for s in sales) / total_weight
    representative_area = compute_mean([s.area for s in sales])
    dated = sorted(s.sale_date for s in sales if s.sale_date is not None)

    logger.debug(
        f"Subsegment {subsegment_id}: {len(sales)}/{len(objects)} eligible, "
        f"{weighted_per_meter:,.0f}/sqm over {representative_area:.1f}sqm"
    )

    return ReferencePriceResult(
        subsegment_id=subsegment_id,
        segment_name=segment_name,
        per_meter_price=round_half_away(weighted_per_meter),
        total_price=round_half_away(weighted_per_meter * representative_area),
        representative_area=representative_area,
        total_object_count=len(objects),
        evaluated_object_count=len(sales),
        oldest_sale_date=dated[0] if dated else None,
        newest_sale_date=dated[-1] if dated else None,
    )
