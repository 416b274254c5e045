# src/flipstat/compute/segments.py
"""Segment address resolution for FlipStat.

A segment's address set is:
1. Every address in the segment's map area that passes its filters
2. Plus any address named explicitly in the segment's address list

Segments are always passed in explicitly; there is no module-level registry.
"""

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Set

from flipstat.compute.filters import FilterSpec, matches
from flipstat.models import Address, RealEstateObject, Segment, Subsegment

logger = logging.getLogger(__name__)


def resolve_addresses(
    segment: Optional[Segment],
    addresses: Iterable[Address],
    known_area_ids: Optional[Set[str]] = None,
) -> Set[str]:
    """
    Resolve the ids of addresses belonging to a segment.

    Args:
        segment: Segment to resolve (None resolves to nothing)
        addresses: Loaded addresses (any area)
        known_area_ids: Ids of areas that exist; when given, a segment whose
            map area is not among them resolves to nothing

    Returns:
        Set of address ids. Empty when the segment or its area is missing.

    Raises:
        InvalidFilterError: The segment's filter dict cannot be parsed
    """
    if segment is None:
        return set()

    if segment.map_area_id is None or (
        known_area_ids is not None and segment.map_area_id not in known_area_ids
    ):
        logger.debug(f"Segment {segment.id}: map area {segment.map_area_id} not found")
        return set()

    spec = segment.filter_spec
    resolved = set()
    for address in addresses:
        in_area = address.map_area_id == segment.map_area_id
        if in_area and matches(address, spec):
            resolved.add(address.id)
        elif spec.allow_list is not None and spec.allow_list.accepts(address.id):
            resolved.add(address.id)

    return resolved


def filter_objects_by_addresses(
    objects: Iterable[RealEstateObject],
    address_ids: Set[str],
) -> List[RealEstateObject]:
    """Keep objects whose address is in the resolved set, preserving order."""
    return [obj for obj in objects if obj.address_id in address_ids]


def filter_objects_by_subsegment(
    objects: Iterable[RealEstateObject],
    subsegment: Subsegment,
) -> List[RealEstateObject]:
    """
    Keep objects matching a subsegment's own filters.

    Raises:
        InvalidFilterError: The subsegment's filter dict cannot be parsed
    """
    spec = subsegment.filter_spec
    return [obj for obj in objects if matches(obj, spec)]


def index_segments(segments: Iterable[Segment]) -> Dict[str, Segment]:
    """Map segment ids to segments."""
    return {segment.id: segment for segment in segments}


def group_subsegments(
    subsegments: Iterable[Subsegment],
) -> Dict[Optional[str], List[Subsegment]]:
    """Group subsegments by owning segment id, keeping input order."""
    grouped: Dict[Optional[str], List[Subsegment]] = {}
    for subsegment in subsegments:
        grouped.setdefault(subsegment.segment_id, []).append(subsegment)
    return grouped


def listed_address_ids(segments: Iterable[Segment]) -> Set[str]:
    """
    Address ids named explicitly in segment filters.

    These can lie outside the segment's area, so callers loading one area
    need to fetch them separately. Malformed lists are skipped here; the
    segment reports its own filter error when resolved.
    """
    ids: Set[str] = set()
    for segment in segments:
        filters = segment.filters
        if isinstance(filters, Mapping):
            listed = filters.get('addresses')
            if isinstance(listed, (list, tuple, set)):
                ids.update(str(address_id) for address_id in listed)
        elif isinstance(filters, FilterSpec) and filters.allow_list is not None:
            ids.update(filters.allow_list.ids)
    return ids
