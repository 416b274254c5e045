# tests/test_aggregator.py
"""Tests for the subsegment aggregator and drill state."""

import pytest
from flipstat.compute.aggregator import (
    MissingReferenceError,
    Scope,
    SubsegmentAggregator,
    format_report_card,
)
from flipstat.compute.evaluations import EvaluationSnapshot, UnknownEvaluationTagError
from flipstat.compute.segments import resolve_addresses
from flipstat.models import Address, Segment, Subsegment


class CountingResolver:
    """Wraps resolve_addresses and counts calls."""

    def __init__(self):
        self.calls = 0

    def __call__(self, segment, addresses, known_area_ids=None):
        self.calls += 1
        return resolve_addresses(segment, addresses, known_area_ids)


@pytest.fixture
def resolver():
    return CountingResolver()


@pytest.fixture
def aggregator(objects, addresses, segments, subsegments, store, resolver):
    return SubsegmentAggregator(
        objects=objects,
        addresses=addresses,
        segments=segments,
        subsegments=subsegments,
        evaluations=store,
        known_area_ids={'A1', 'A2'},
        resolver=resolver,
    )


class TestScopes:
    """Test which subsegments get cards."""

    def test_idle_has_no_cards(self, aggregator, as_of):
        assert aggregator.scope == Scope.IDLE
        assert aggregator.aggregate(as_of) == []

    def test_unscoped_covers_everything_in_order(self, aggregator, as_of):
        aggregator.show_all()
        cards = aggregator.aggregate(as_of)
        assert [c.subsegment_id for c in cards] == ['SS1', 'SS2', 'SS3']

    def test_segment_scope(self, aggregator, as_of):
        aggregator.select_segment('S1')
        cards = aggregator.aggregate(as_of)
        assert [c.subsegment_id for c in cards] == ['SS1', 'SS2']
        assert {o.id for o in aggregator.working_objects} == {'o1', 'o2', 'o3', 'o5'}

    def test_segment_none_goes_unscoped(self, aggregator):
        aggregator.select_segment('S1')
        aggregator.select_segment(None)
        assert aggregator.scope == Scope.UNSCOPED

    def test_unknown_segment(self, aggregator):
        with pytest.raises(MissingReferenceError):
            aggregator.select_segment('nope')

    def test_subsegment_picker(self, aggregator, as_of):
        aggregator.select_subsegment('SS3')
        cards = aggregator.aggregate(as_of)
        assert [c.subsegment_id for c in cards] == ['SS3']
        assert [o.id for o in aggregator.working_objects] == ['o4']


class TestCards:
    """Test card contents."""

    def test_panel_two_room_card(self, aggregator, as_of):
        aggregator.show_all()
        card = aggregator.aggregate(as_of)[0]

        assert card.subsegment_name == 'Panel 2k'
        assert card.segment_name == 'Panel blocks'
        assert not card.is_degraded
        # o1 and o2 are sold and tagged; o3 is still on the market
        assert card.price.total_object_count == 3
        assert card.price.evaluated_object_count == 2
        assert card.price.per_meter_price == 200000
        assert card.price.representative_area == 55
        assert card.exposure.sample_count == 2
        assert card.exposure.min_days == 30
        assert card.exposure.max_days == 60

    def test_unknown_tag_is_fatal(self, objects, addresses, segments, subsegments, as_of):
        """A tag with no weight stops the pass instead of degrading a card."""
        snapshot = EvaluationSnapshot({'o1': 'gone'}, {'flipping': 1.0})
        aggregator = SubsegmentAggregator(objects, addresses, segments, subsegments, snapshot)
        aggregator.show_all()
        with pytest.raises(UnknownEvaluationTagError):
            aggregator.aggregate(as_of)

    def test_format_card(self, aggregator, as_of):
        aggregator.show_all()
        text = format_report_card(aggregator.aggregate(as_of)[0])
        assert 'Panel blocks / Panel 2k' in text
        assert '200,000/sqm' in text


class TestPartialFailure:
    """One broken subsegment must not take down the batch."""

    def test_dangling_segment(self, objects, addresses, segments, subsegments, store, as_of):
        subsegments = [
            subsegments[0],
            Subsegment(id='SSX', segment_id='deleted', name='Orphan', filters={'rooms': [2]}),
        ]
        aggregator = SubsegmentAggregator(objects, addresses, segments, subsegments, store)
        aggregator.show_all()

        cards = aggregator.aggregate(as_of)

        assert [c.subsegment_id for c in cards] == ['SS1', 'SSX']
        good, broken = cards
        assert good.price.per_meter_price == 200000
        assert broken.is_degraded
        assert 'deleted' in broken.warning
        assert broken.price.per_meter_price is None
        assert broken.price.representative_area is None
        assert broken.exposure.median_days is None
        assert broken.exposure.sample_count == 0

    def test_malformed_filter(self, objects, addresses, segments, store, as_of):
        subsegments = [
            Subsegment(id='SS1', segment_id='S1', name='Panel 2k', filters={'rooms': [2]}),
            Subsegment(id='SSB', segment_id='S1', name='Bad', filters={'area_from': 'big'}),
        ]
        aggregator = SubsegmentAggregator(objects, addresses, segments, subsegments, store)
        aggregator.show_all()

        good, bad = aggregator.aggregate(as_of)

        assert not good.is_degraded
        assert bad.is_degraded
        assert bad.segment_name == 'Panel blocks'

    def test_nested_list_in_subsegment_filter(self, objects, addresses, segments, store, as_of):
        subsegments = [
            Subsegment(id='SS1', segment_id='S1', name='Panel 2k', filters={'rooms': [2]}),
            Subsegment(id='SSB', segment_id='S1', name='Bad', filters={'rooms': [[2, 3]]}),
        ]
        aggregator = SubsegmentAggregator(objects, addresses, segments, subsegments, store)
        aggregator.show_all()

        good, bad = aggregator.aggregate(as_of)

        assert good.price.per_meter_price == 200000
        assert bad.is_degraded
        assert 'rooms' in bad.warning

    def test_dict_in_segment_filter(self, objects, addresses, subsegments, store, as_of):
        segments = [
            Segment(id='S1', name='Panel blocks', map_area_id='A1', filters={'type': ['panel']}),
            Segment(id='S2', name='Broken', map_area_id='A1', filters={'type': [{'x': 1}]}),
        ]
        aggregator = SubsegmentAggregator(objects, addresses, segments, subsegments, store)
        aggregator.show_all()

        cards = aggregator.aggregate(as_of)

        assert [c.subsegment_id for c in cards] == ['SS1', 'SS2', 'SS3']
        assert not cards[0].is_degraded
        assert cards[2].is_degraded

    def test_text_floor_count_does_not_match_range(self, objects, store, as_of):
        addresses = [
            Address(id='ad1', map_area_id='A1', type='panel', floors_count='nine'),
            Address(id='ad2', map_area_id='A1', type='panel', floors_count='9'),
        ]
        segments = [Segment(id='S1', name='Mid-rise', map_area_id='A1',
                            filters={'floors_from': 5, 'floors_to': 12})]
        subsegments = [Subsegment(id='SS1', segment_id='S1', name='Mid 2k', filters={'rooms': [2]})]
        aggregator = SubsegmentAggregator(objects, addresses, segments, subsegments, store)
        aggregator.show_all()

        (card,) = aggregator.aggregate(as_of)

        assert not card.is_degraded
        # only o2 sits at ad2; o1 and o3 are at the unparseable ad1
        assert card.price.total_object_count == 1

    def test_segment_in_unknown_area(self, objects, addresses, store, as_of):
        segments = [Segment(id='S1', name='Lost', map_area_id='A7')]
        subsegments = [Subsegment(id='SS1', segment_id='S1', name='Lost 2k')]
        aggregator = SubsegmentAggregator(objects, addresses, segments, subsegments, store,
                                          known_area_ids={'A1'})
        aggregator.show_all()

        (card,) = aggregator.aggregate(as_of)

        assert card.is_degraded
        assert 'A7' in card.warning

    def test_drill_into_broken_subsegment(self, objects, addresses, segments, store, as_of):
        subsegments = [Subsegment(id='SSX', segment_id='deleted', name='Orphan')]
        aggregator = SubsegmentAggregator(objects, addresses, segments, subsegments, store)

        assert aggregator.drill_in('SSX') == []
        (card,) = aggregator.aggregate(as_of)
        assert card.is_degraded


class TestDrill:
    """Test drill in / drill out."""

    def test_drill_round_trip_without_resolving(self, aggregator, resolver, as_of):
        aggregator.show_all()
        before_objects = list(aggregator.working_objects)
        before_cards = aggregator.aggregate(as_of)
        calls_after_pass = resolver.calls

        members = aggregator.drill_in('SS1')
        assert [o.id for o in members] == ['o1', 'o2', 'o3']
        assert aggregator.scope == Scope.SUBSEGMENT

        restored = aggregator.drill_out()

        assert restored == before_objects
        assert aggregator.scope == Scope.UNSCOPED
        assert aggregator.last_reports == before_cards
        assert resolver.calls == calls_after_pass

    def test_drill_out_restores_cards_after_drilled_pass(self, aggregator, resolver, as_of):
        aggregator.show_all()
        before_cards = aggregator.aggregate(as_of)

        aggregator.drill_in('SS1')
        drilled = aggregator.aggregate(as_of)
        assert [c.subsegment_id for c in drilled] == ['SS1']
        calls = resolver.calls

        aggregator.drill_out()

        assert [c.subsegment_id for c in aggregator.last_reports] == ['SS1', 'SS2', 'SS3']
        assert aggregator.last_reports == before_cards
        assert resolver.calls == calls

    def test_drill_in_out_makes_no_resolver_calls(self, aggregator, resolver, as_of):
        aggregator.show_all()
        aggregator.aggregate(as_of)
        calls = resolver.calls

        aggregator.drill_in('SS2')
        aggregator.drill_out()

        assert resolver.calls == calls

    def test_address_resolution_cached_per_pass(self, aggregator, resolver, as_of):
        """Two segments -> two resolver calls for three subsegments."""
        aggregator.show_all()
        aggregator.aggregate(as_of)
        assert resolver.calls == 2

    def test_drill_out_restores_segment_scope(self, aggregator):
        aggregator.select_segment('S1')
        before = list(aggregator.working_objects)

        aggregator.drill_in('SS2')
        aggregator.drill_out()

        assert aggregator.scope == Scope.SEGMENT
        assert aggregator.segment_id == 'S1'
        assert aggregator.working_objects == before

    def test_switching_cards_keeps_original_saved_set(self, aggregator):
        aggregator.show_all()
        before = list(aggregator.working_objects)

        aggregator.drill_in('SS1')
        aggregator.drill_in('SS2')
        assert [o.id for o in aggregator.working_objects] == ['o5']

        assert aggregator.drill_out() == before

    def test_toggle(self, aggregator):
        aggregator.show_all()
        before = list(aggregator.working_objects)

        aggregator.toggle('SS1')
        assert aggregator.subsegment_id == 'SS1'
        aggregator.toggle('SS1')
        assert aggregator.scope == Scope.UNSCOPED
        assert aggregator.working_objects == before

    def test_drill_out_when_not_drilled(self, aggregator):
        aggregator.show_all()
        before = list(aggregator.working_objects)
        assert aggregator.drill_out() == before

    def test_unknown_subsegment(self, aggregator):
        with pytest.raises(MissingReferenceError):
            aggregator.drill_in('nope')
