# src/flipstat/compute/filters.py
"""Filter specifications and the membership predicate for FlipStat.

Segments filter addresses (house class, materials, floor count, build year,
explicit address list). Subsegments filter objects (property type, rooms,
area, price, floor). Both are expressed with the same three constraint
kinds so one predicate serves every caller:

- SetConstraint: value must be one of a list
- RangeConstraint: low <= value <= high, either bound open
- AllowList: record id in an explicit list

Filters arrive from the store as loosely-typed dicts; the parse_* functions
turn them into FilterSpec objects and reject keys they don't understand.
"""

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union


class InvalidFilterError(ValueError):
    """Raised when a filter dict cannot be turned into a FilterSpec."""


@dataclass(frozen=True)
class SetConstraint:
    """Record field must hold one of the listed values."""

    field: str
    values: FrozenSet[Any]

    def accepts(self, value: Any) -> bool:
        if value is None:
            return False
        return value in self.values


@dataclass(frozen=True)
class RangeConstraint:
    """Record field must lie within [low, high]; None means open."""

    field: str
    low: Optional[float] = None
    high: Optional[float] = None
    positive_only: bool = False   # treat 0 as "unknown" (prices, areas)

    def accepts(self, value: Any) -> bool:
        if value is None or isinstance(value, bool):
            return False
        try:
            value = float(value)
        except (TypeError, ValueError):
            return False
        if self.positive_only and value <= 0:
            return False
        if self.low is not None and value < self.low:
            return False
        if self.high is not None and value > self.high:
            return False
        return True


@dataclass(frozen=True)
class AllowList:
    """Explicit record ids. Evaluated independently of other constraints."""

    ids: FrozenSet[str]

    def accepts(self, record_id: Any) -> bool:
        return record_id is not None and str(record_id) in self.ids


Constraint = Union[SetConstraint, RangeConstraint]


@dataclass(frozen=True)
class FilterSpec:
    """A set of ANDed constraints plus an optional explicit allow-list."""

    constraints: Tuple[Constraint, ...] = ()
    allow_list: Optional[AllowList] = None

    @property
    def is_empty(self) -> bool:
        return not self.constraints and self.allow_list is None

    def get_filter_description(self) -> Optional[str]:
        """Get human-readable filter description for reports."""
        parts = []
        for constraint in self.constraints:
            if isinstance(constraint, SetConstraint):
                values = '/'.join(sorted(str(v) for v in constraint.values))
                parts.append(f"{constraint.field} in {values}")
            elif isinstance(constraint, RangeConstraint):
                if constraint.low is not None and constraint.high is not None:
                    parts.append(f"{constraint.field} {_fmt(constraint.low)}-{_fmt(constraint.high)}")
                elif constraint.low is not None:
                    parts.append(f"{constraint.field} ≥{_fmt(constraint.low)}")
                elif constraint.high is not None:
                    parts.append(f"{constraint.field} ≤{_fmt(constraint.high)}")
        if self.allow_list is not None:
            parts.append(f"{len(self.allow_list.ids)} listed")
        return ', '.join(parts) if parts else None


def _fmt(value: float) -> str:
    return f"{value:g}"


def _field_value(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def matches(record: Any, spec: Optional[FilterSpec]) -> bool:
    """
    Decide whether a record belongs to a filter spec.

    An absent constraint never excludes. Every present constraint must hold,
    and a record missing a constrained attribute does not match. A record on
    the allow-list always matches; a spec holding only an allow-list matches
    nothing else.

    Args:
        record: Address or RealEstateObject (dataclass or dict)
        spec: Filter specification, None meaning "no filters"

    Returns:
        True if the record belongs to the spec
    """
    if spec is None or spec.is_empty:
        return True

    if spec.allow_list is not None:
        if spec.allow_list.accepts(_field_value(record, 'id')):
            return True
        if not spec.constraints:
            return False

    return all(
        constraint.accepts(_field_value(record, constraint.field))
        for constraint in spec.constraints
    )


# Address-level keys: filter key -> record field
ADDRESS_SET_KEYS = {
    'type': 'type',
    'house_class_id': 'house_class_id',
    'house_series_id': 'house_series_id',
    'wall_material_id': 'wall_material_id',
    'ceiling_material_id': 'ceiling_material_id',
    'gas_supply': 'gas_supply',
}
ADDRESS_RANGE_KEYS = {
    'floors': 'floors_count',
    'build_year': 'build_year',
}

# Object-level keys
OBJECT_SET_KEYS = {
    'property_type': 'property_type',
    'rooms': 'rooms',
}
OBJECT_RANGE_KEYS = {
    'area': 'area_total',
    'price': 'current_price',
    'floor': 'floor',
}
OBJECT_POSITIVE_FIELDS = {'area_total', 'current_price'}

# Legacy aliases used by older subsegment records
OBJECT_KEY_ALIASES = {
    'min_area': 'area_from',
    'max_area': 'area_to',
    'min_price': 'price_from',
    'max_price': 'price_to',
}

ALLOW_LIST_KEYS = {'addresses', 'objects'}


SCALAR_TYPES = (str, int, float, bool)


def _as_values(key: str, value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set, frozenset)):
        for item in value:
            if not isinstance(item, SCALAR_TYPES):
                raise InvalidFilterError(
                    f"Filter '{key}' values must be scalars, got {type(item).__name__}"
                )
        return list(value)
    if isinstance(value, SCALAR_TYPES):
        return [value]
    raise InvalidFilterError(f"Filter '{key}' must be a value or list, got {type(value).__name__}")


def _as_bound(key: str, value: Any) -> Optional[float]:
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise InvalidFilterError(f"Filter '{key}' must be numeric, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise InvalidFilterError(f"Filter '{key}' must be numeric, got {value!r}")


def _parse(
    filters: Mapping[str, Any],
    set_keys: Dict[str, str],
    range_keys: Dict[str, str],
    positive_fields: Iterable[str] = (),
    aliases: Optional[Dict[str, str]] = None,
) -> FilterSpec:
    if not isinstance(filters, Mapping):
        raise InvalidFilterError(f"Filters must be a mapping, got {type(filters).__name__}")

    positive_fields = set(positive_fields)
    constraints: List[Constraint] = []
    bounds: Dict[str, Dict[str, Optional[float]]] = {}
    allow_ids: Optional[FrozenSet[str]] = None

    for raw_key, value in filters.items():
        key = (aliases or {}).get(raw_key, raw_key)

        if value is None:
            continue

        if key in set_keys:
            values = _as_values(key, value)
            if values:
                constraints.append(SetConstraint(set_keys[key], frozenset(values)))
            continue

        if key in ALLOW_LIST_KEYS:
            ids = _as_values(key, value)
            if ids:
                allow_ids = frozenset(str(i) for i in ids)
            continue

        prefix, _, suffix = key.rpartition('_')
        if prefix in range_keys and suffix in ('from', 'to'):
            bounds.setdefault(prefix, {})[suffix] = _as_bound(raw_key, value)
            continue

        raise InvalidFilterError(f"Unknown filter key: {raw_key}")

    for prefix, pair in bounds.items():
        low, high = pair.get('from'), pair.get('to')
        if low is None and high is None:
            continue
        if low is not None and high is not None and low > high:
            raise InvalidFilterError(f"Filter '{prefix}' has from > to ({low:g} > {high:g})")
        record_field = range_keys[prefix]
        constraints.append(RangeConstraint(
            field=record_field,
            low=low,
            high=high,
            positive_only=record_field in positive_fields,
        ))

    return FilterSpec(
        constraints=tuple(constraints),
        allow_list=AllowList(allow_ids) if allow_ids else None,
    )


def parse_address_filters(filters: Mapping[str, Any]) -> FilterSpec:
    """
    Parse a segment's filter dict (over Address attributes).

    Args:
        filters: Dict like {'house_class_id': [...], 'floors_from': 5, 'addresses': [...]}

    Returns:
        FilterSpec

    Raises:
        InvalidFilterError: Unknown key, non-numeric range bound or inverted range
    """
    return _parse(filters, ADDRESS_SET_KEYS, ADDRESS_RANGE_KEYS)


def parse_object_filters(filters: Mapping[str, Any]) -> FilterSpec:
    """Parse a subsegment's filter dict (over RealEstateObject attributes)."""
    return _parse(
        filters,
        OBJECT_SET_KEYS,
        OBJECT_RANGE_KEYS,
        positive_fields=OBJECT_POSITIVE_FIELDS,
        aliases=OBJECT_KEY_ALIASES,
    )


def as_address_spec(filters: Union[FilterSpec, Mapping[str, Any], None]) -> FilterSpec:
    """Return filters as a FilterSpec, parsing raw dicts as address filters."""
    if isinstance(filters, FilterSpec):
        return filters
    return parse_address_filters(filters or {})


def as_object_spec(filters: Union[FilterSpec, Mapping[str, Any], None]) -> FilterSpec:
    """Return filters as a FilterSpec, parsing raw dicts as object filters."""
    if isinstance(filters, FilterSpec):
        return filters
    return parse_object_filters(filters or {})
