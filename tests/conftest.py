import pytest
import tempfile
import os
from datetime import datetime, timedelta

from flipstat.db import Database
from flipstat.compute.evaluations import EvaluationStore
from flipstat.models import Address, RealEstateObject, Segment, Subsegment

AS_OF = datetime(2024, 6, 1)


@pytest.fixture
def temp_db():
    """Provide a temporary database path."""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        yield f.name
    os.unlink(f.name)


@pytest.fixture
def db():
    """Provide an initialised Database instance backed by a temp file."""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        path = f.name
    database = Database(path)
    database.init_schema()
    yield database
    database.close()
    os.unlink(path)


@pytest.fixture
def sample_config():
    """Provide sample configuration for tests."""
    return {
        'weights': {
            'flipping': 1.0,
            'designer_renovation': 0.9,
            'euro_renovation': 0.8,
        },
        'recency': {
            'floor': 0.7,
            'horizon_days': 365,
        },
        'profitability': {
            'renovation_speed': 1.5,
            'additional_expenses': 100000,
            'financing': 'cash',
            'tax_type': 'individual',
            'target_annual_roi': 20,
        },
    }


@pytest.fixture
def as_of():
    return AS_OF


@pytest.fixture
def addresses():
    """Two panel buildings and one brick building in area A1, one panel in A2."""
    return [
        Address(id='ad1', map_area_id='A1', type='panel', build_year=1975, floors_count=9),
        Address(id='ad2', map_area_id='A1', type='panel', build_year=1982, floors_count=12),
        Address(id='ad3', map_area_id='A1', type='brick', build_year=1960, floors_count=5),
        Address(id='ad9', map_area_id='A2', type='panel', build_year=1990, floors_count=16),
    ]


@pytest.fixture
def objects():
    """Mix of sold/active two- and one-room flats across the A1 buildings."""
    return [
        RealEstateObject(id='o1', status='archive', address_id='ad1', current_price=10000000,
                         area_total=50, created=AS_OF - timedelta(days=70),
                         updated=AS_OF - timedelta(days=10), property_type='2k', rooms=2),
        RealEstateObject(id='o2', status='archive', address_id='ad2', current_price=12000000,
                         area_total=60, created=AS_OF - timedelta(days=430),
                         updated=AS_OF - timedelta(days=400), property_type='2k', rooms=2),
        RealEstateObject(id='o3', status='active', address_id='ad1', current_price=11000000,
                         area_total=52, created=AS_OF - timedelta(days=20),
                         updated=AS_OF - timedelta(days=1), property_type='2k', rooms=2),
        RealEstateObject(id='o4', status='archive', address_id='ad3', current_price=9000000,
                         area_total=45, created=AS_OF - timedelta(days=100),
                         updated=AS_OF - timedelta(days=50), property_type='2k', rooms=2),
        RealEstateObject(id='o5', status='archive', address_id='ad2', current_price=7000000,
                         area_total=35, created=AS_OF - timedelta(days=90),
                         updated=AS_OF - timedelta(days=30), property_type='1k', rooms=1),
        RealEstateObject(id='o9', status='archive', address_id='ad9', current_price=8000000,
                         area_total=40, created=AS_OF - timedelta(days=60),
                         updated=AS_OF - timedelta(days=20), property_type='1k', rooms=1),
    ]


@pytest.fixture
def segments():
    return [
        Segment(id='S1', name='Panel blocks', map_area_id='A1', filters={'type': ['panel']}),
        Segment(id='S2', name='Brick blocks', map_area_id='A1', filters={'type': ['brick']}),
    ]


@pytest.fixture
def subsegments():
    return [
        Subsegment(id='SS1', segment_id='S1', name='Panel 2k', filters={'rooms': [2]}),
        Subsegment(id='SS2', segment_id='S1', name='Panel 1k', filters={'rooms': [1]}),
        Subsegment(id='SS3', segment_id='S2', name='Brick 2k', filters={'rooms': [2]}),
    ]


@pytest.fixture
def store():
    """Evaluations for the sold A1 flats."""
    return EvaluationStore(tags={
        'o1': 'flipping',
        'o2': 'euro_renovation',
        'o4': 'designer_renovation',
        'o5': 'flipping',
    })


@pytest.fixture
def snapshot(as_of):
    """Snapshot dict in import format (timestamps as ISO strings)."""
    return {
        'map_areas': [{'id': 'A1', 'name': 'Center'}],
        'addresses': [
            {'id': 'ad1', 'map_area_id': 'A1', 'type': 'panel', 'build_year': 1975, 'gas_supply': True},
            {'id': 'ad2', 'map_area_id': 'A1', 'type': 'panel', 'build_year': 1982},
            {'id': 'ad3', 'map_area_id': 'A1', 'type': 'brick', 'build_year': 1960},
        ],
        'objects': [
            {'id': 'o1', 'status': 'archive', 'address_id': 'ad1', 'current_price': 10000000,
             'area_total': 50, 'created': '2024-03-23T00:00:00', 'updated': '2024-05-22T00:00:00',
             'rooms': 2},
            {'id': 'o2', 'status': 'archive', 'address_id': 'ad2', 'current_price': 12000000,
             'area_total': 60, 'created': '2023-03-29T00:00:00', 'updated': '2023-04-28T00:00:00',
             'rooms': 2},
            {'id': 'o3', 'status': 'active', 'address_id': 'ad1', 'current_price': 11000000,
             'area_total': 52, 'created': '2024-05-12T00:00:00', 'updated': '2024-05-31T00:00:00',
             'rooms': 2},
            {'id': 'o4', 'status': 'archive', 'address_id': 'ad3', 'current_price': 9000000,
             'area_total': 45, 'created': '2024-02-22T00:00:00', 'updated': '2024-04-12T00:00:00',
             'rooms': 2},
        ],
        'segments': [
            {'id': 'S1', 'name': 'Panel blocks', 'map_area_id': 'A1', 'filters': {'type': ['panel']}},
            {'id': 'S2', 'name': 'Brick blocks', 'map_area_id': 'A1', 'filters': {'type': ['brick']}},
        ],
        'subsegments': [
            {'id': 'SS1', 'segment_id': 'S1', 'name': 'Panel 2k', 'filters': {'rooms': [2]}},
            {'id': 'SS3', 'segment_id': 'S2', 'name': 'Brick 2k', 'filters': {'rooms': [2]}},
        ],
        'evaluations': {
            'o1': 'flipping',
            'o2': 'euro_renovation',
        },
    }
