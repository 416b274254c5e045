# src/flipstat/models.py
"""Record types shared by the FlipStat compute modules.

Records arrive from the query layer (or a snapshot file) as plain dicts.
The ``from_dict`` constructors normalise timestamps and numeric fields so
the engines can treat every record the same way.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

from flipstat.compute.filters import FilterSpec, as_address_spec, as_object_spec

STATUS_ACTIVE = 'active'
STATUS_ARCHIVE = 'archive'

Timestamp = Union[str, int, float, date, datetime, None]


def parse_timestamp(value: Timestamp) -> Optional[datetime]:
    """
    Normalise a timestamp to a naive UTC datetime.

    Accepts ISO strings, dates, datetimes (aware ones are converted to UTC)
    and epoch milliseconds, which is how the upstream store keeps them.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        return parse_timestamp(datetime.fromisoformat(text))
    raise ValueError(f"Unsupported timestamp: {value!r}")


def _as_int(value: Any) -> int:
    if value in (None, ''):
        return 0
    return int(value)


def _as_float(value: Any) -> float:
    if value in (None, ''):
        return 0.0
    return float(value)


@dataclass(frozen=True)
class RealEstateObject:
    """A deduplicated property record (one flat, many listings)."""

    id: str
    status: str                          # 'active' or 'archive'
    address_id: Optional[str]
    current_price: int = 0               # 0 when unknown
    area_total: float = 0.0              # sqm, 0 when unknown
    created: Optional[datetime] = None
    updated: Optional[datetime] = None   # for archive: date it left the market
    property_type: Optional[str] = None  # studio/1k/2k/3k/4k+
    rooms: Optional[int] = None
    floor: Optional[int] = None
    floors_total: Optional[int] = None

    @property
    def is_sold(self) -> bool:
        return self.status == STATUS_ARCHIVE

    @property
    def price_per_meter(self) -> Optional[float]:
        if self.current_price > 0 and self.area_total > 0:
            return self.current_price / self.area_total
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RealEstateObject':
        return cls(
            id=str(data['id']),
            status=data.get('status', STATUS_ACTIVE),
            address_id=str(data['address_id']) if data.get('address_id') is not None else None,
            current_price=_as_int(data.get('current_price')),
            area_total=_as_float(data.get('area_total')),
            created=parse_timestamp(data.get('created')),
            updated=parse_timestamp(data.get('updated')),
            property_type=data.get('property_type'),
            rooms=data.get('rooms'),
            floor=data.get('floor'),
            floors_total=data.get('floors_total'),
        )


@dataclass(frozen=True)
class Address:
    """Building address with structural attributes. Read-only here."""

    id: str
    map_area_id: Optional[str]
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    type: Optional[str] = None
    build_year: Optional[int] = None
    floors_count: Optional[int] = None
    wall_material_id: Optional[str] = None
    ceiling_material_id: Optional[str] = None
    house_series_id: Optional[str] = None
    house_class_id: Optional[str] = None
    gas_supply: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Address':
        return cls(
            id=str(data['id']),
            map_area_id=str(data['map_area_id']) if data.get('map_area_id') is not None else None,
            latitude=data.get('latitude'),
            longitude=data.get('longitude'),
            type=data.get('type'),
            build_year=data.get('build_year'),
            floors_count=data.get('floors_count'),
            wall_material_id=data.get('wall_material_id'),
            ceiling_material_id=data.get('ceiling_material_id'),
            house_series_id=data.get('house_series_id'),
            house_class_id=data.get('house_class_id'),
            gas_supply=data.get('gas_supply'),
        )


FilterInput = Union[FilterSpec, Mapping[str, Any]]


@dataclass(frozen=True)
class Segment:
    """A named partition of an area's addresses.

    ``filters`` keeps whatever the store delivered (raw dict or FilterSpec);
    it is parsed on use so a malformed filter only breaks its own segment.
    """

    id: str
    name: str
    map_area_id: Optional[str]
    filters: FilterInput = field(default_factory=dict)

    @property
    def filter_spec(self) -> FilterSpec:
        return as_address_spec(self.filters)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Segment':
        return cls(
            id=str(data['id']),
            name=data.get('name') or str(data['id']),
            map_area_id=str(data['map_area_id']) if data.get('map_area_id') is not None else None,
            filters=data.get('filters') or {},
        )


@dataclass(frozen=True)
class Subsegment:
    """A partition of a segment's objects by object-level filters."""

    id: str
    segment_id: Optional[str]
    name: str
    filters: FilterInput = field(default_factory=dict)

    @property
    def filter_spec(self) -> FilterSpec:
        return as_object_spec(self.filters)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Subsegment':
        return cls(
            id=str(data['id']),
            segment_id=str(data['segment_id']) if data.get('segment_id') is not None else None,
            name=data.get('name') or str(data['id']),
            filters=data.get('filters') or {},
        )
