# tests/test_reference_price.py
"""Tests for the recency-weighted reference price."""

from datetime import datetime, timedelta

import pytest
from flipstat.compute.evaluations import EvaluationStore
from flipstat.compute.reference_price import (
    RecencyPolicy,
    calculate_adjusted_weight,
    calculate_recency_factor,
    compute_reference_price,
    get_weighted_sales,
    load_recency_from_config,
)
from flipstat.compute.stats import round_half_away
from flipstat.models import RealEstateObject

AS_OF = datetime(2024, 6, 1)


def sold(object_id, price, area, days_ago, status='archive', **kwargs):
    updated = AS_OF - timedelta(days=days_ago) if days_ago is not None else None
    return RealEstateObject(
        id=object_id,
        status=status,
        address_id='ad1',
        current_price=price,
        area_total=area,
        updated=updated,
        **kwargs,
    )


class TestRecencyFactor:
    """Test recency decay."""

    def test_fresh_sale(self):
        assert calculate_recency_factor(0) == 1.0

    def test_linear_decay(self):
        assert calculate_recency_factor(36.5) == pytest.approx(0.9)

    @pytest.mark.parametrize('days', [365, 400, 1000, 10000])
    def test_floor_beyond_horizon(self, days):
        """Anything a year or older sits exactly on the floor."""
        assert calculate_recency_factor(days) == 0.7

    def test_floor_reached_before_horizon(self):
        # 1 - 300/365 = 0.178 < 0.7
        assert calculate_recency_factor(300) == 0.7

    def test_future_sale_clamped(self):
        assert calculate_recency_factor(-20) == 1.0

    def test_custom_policy(self):
        policy = RecencyPolicy(floor=0.5, horizon_days=100)
        assert calculate_recency_factor(25, policy) == pytest.approx(0.75)
        assert calculate_recency_factor(80, policy) == 0.5

    def test_adjusted_weight_monotonic(self):
        """More recent sale never weighs less; strictly more while above the floor."""
        newer = calculate_adjusted_weight(1.0, 10)
        older = calculate_adjusted_weight(1.0, 50)
        assert newer > older
        assert calculate_adjusted_weight(0.8, 400) == calculate_adjusted_weight(0.8, 500)

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            RecencyPolicy(floor=0)
        with pytest.raises(ValueError):
            RecencyPolicy(horizon_days=-1)

    def test_load_from_config(self):
        policy = load_recency_from_config({'recency': {'floor': 0.6, 'horizon_days': 180}})
        assert policy == RecencyPolicy(floor=0.6, horizon_days=180)
        assert load_recency_from_config({}) == RecencyPolicy()


class TestWeightedSales:
    """Test eligibility."""

    def test_eligibility(self):
        objects = [
            sold('ok', 10000000, 50, 10),
            sold('active', 10000000, 50, 10, status='active'),
            sold('untagged', 10000000, 50, 10),
            sold('no_price', 0, 50, 10),
            sold('no_area', 10000000, 0, 10),
        ]
        store = EvaluationStore(tags={
            'ok': 'flipping', 'active': 'flipping', 'no_price': 'flipping', 'no_area': 'flipping',
        })

        sales = get_weighted_sales(objects, store, AS_OF)

        assert [s.object_id for s in sales] == ['ok']
        assert sales[0].price_per_meter == 200000

    def test_created_used_when_updated_missing(self):
        obj = RealEstateObject(id='o', status='archive', address_id='a', current_price=100,
                               area_total=1, created=AS_OF - timedelta(days=73))
        sales = get_weighted_sales([obj], EvaluationStore(tags={'o': 'flipping'}), AS_OF)
        assert sales[0].recency_factor == pytest.approx(0.8)

    def test_undated_sale_gets_floor(self):
        sales = get_weighted_sales([sold('o', 100, 1, None)], EvaluationStore(tags={'o': 'flipping'}), AS_OF)
        assert sales[0].recency_factor == 0.7

    def test_as_of_accepts_iso_string(self):
        sales = get_weighted_sales([sold('o', 100, 1, 0)], EvaluationStore(tags={'o': 'flipping'}),
                                   '2024-06-01T00:00:00Z')
        assert sales[0].recency_factor == 1.0


class TestComputeReferencePrice:
    """Test compute_reference_price()."""

    def test_two_sales_blend(self):
        """Same-day flip at 200k/sqm plus year-old euro renovation at 250k/sqm."""
        objects = [
            sold('o1', 10000000, 50, 0),     # weight 1.0
            sold('o2', 15000000, 60, 400),   # weight 0.8 * 0.7 = 0.56
        ]
        store = EvaluationStore(tags={'o1': 'flipping', 'o2': 'euro_renovation'})

        result = compute_reference_price(objects, store, AS_OF, subsegment_id='SS1', segment_name='Panel')

        # (200000 + 250000 * 0.56) / 1.56 = 217948.72; an unweighted mean would be 225000
        assert result.per_meter_price == 217949
        assert result.representative_area == 55
        assert result.total_price == 11987179
        assert result.evaluated_object_count == 2
        assert result.total_object_count == 2
        assert result.subsegment_id == 'SS1'
        assert result.segment_name == 'Panel'

    def test_weighting_favours_recent_flip(self):
        objects = [
            sold('o1', 10000000, 50, 10),    # 200k/sqm, weight 1.0 * (1 - 10/365)
            sold('o2', 15000000, 60, 400),   # 250k/sqm, weight 0.8 * 0.7
        ]
        store = EvaluationStore(tags={'o1': 'flipping', 'o2': 'euro_renovation'})

        result = compute_reference_price(objects, store, AS_OF)

        w1 = 1.0 * (1 - 10 / 365)
        w2 = 0.8 * 0.7
        expected = (200000 * w1 + 250000 * w2) / (w1 + w2)
        assert result.per_meter_price == round_half_away(expected)
        assert 200000 < result.per_meter_price < 225000

    def test_unsold_objects_give_empty_result(self):
        objects = [
            sold('o1', 10000000, 50, 10, status='active'),
            sold('o2', 12000000, 60, 400, status='active'),
        ]
        store = EvaluationStore(tags={'o1': 'flipping', 'o2': 'euro_renovation'})

        result = compute_reference_price(objects, store, AS_OF)

        assert result.is_empty
        assert result.per_meter_price is None
        assert result.total_price is None
        assert result.representative_area is None
        assert result.evaluated_object_count == 0
        assert result.total_object_count == 2

    def test_no_objects(self):
        result = compute_reference_price([], EvaluationStore(), AS_OF)
        assert result.is_empty
        assert result.total_object_count == 0

    def test_sale_date_range(self):
        objects = [sold('o1', 10000000, 50, 10), sold('o2', 12000000, 60, 400)]
        store = EvaluationStore(tags={'o1': 'flipping', 'o2': 'flipping'})

        result = compute_reference_price(objects, store, AS_OF)

        assert result.newest_sale_date == AS_OF - timedelta(days=10)
        assert result.oldest_sale_date == AS_OF - timedelta(days=400)

    def test_deterministic(self, objects, store, as_of):
        first = compute_reference_price(objects, store, as_of)
        second = compute_reference_price(objects, store, as_of)
        assert first == second

    def test_accepts_snapshot(self, objects, store, as_of):
        assert compute_reference_price(objects, store.snapshot(), as_of) == \
            compute_reference_price(objects, store, as_of)
