# src/flipstat/compute/aggregator.py
"""Per-subsegment price and exposure cards for FlipStat.

Runs address resolution, subsegment matching, the reference price and the
exposure calculation for every subsegment in scope, and tracks which
objects downstream consumers should work with.

Scopes:
- idle: nothing chosen yet, aggregate() returns no cards
- unscoped: every subsegment of every loaded segment
- segment: every subsegment of one segment
- subsegment: a single subsegment (picker or card drill-in)

Drilling into a subsegment narrows the working object set to its members
and remembers the previous set, so drilling out is a plain restore.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from flipstat.compute.evaluations import EvaluationSnapshot
from flipstat.compute.exposure import ExposureResult, compute_exposure
from flipstat.compute.filters import InvalidFilterError
from flipstat.compute.reference_price import (
    RecencyPolicy,
    ReferencePriceResult,
    as_snapshot,
    compute_reference_price,
)
from flipstat.compute.segments import (
    filter_objects_by_addresses,
    filter_objects_by_subsegment,
    group_subsegments,
    index_segments,
    resolve_addresses,
)
from flipstat.models import Address, RealEstateObject, Segment, Subsegment

logger = logging.getLogger(__name__)


class Scope(Enum):
    IDLE = 'idle'
    UNSCOPED = 'unscoped'
    SEGMENT = 'segment'
    SUBSEGMENT = 'subsegment'


class MissingReferenceError(LookupError):
    """A subsegment's segment, or a segment's area, does not exist."""


@dataclass
class SubsegmentReport:
    """One price/exposure card."""

    subsegment_id: str
    subsegment_name: str
    segment_id: Optional[str]
    segment_name: Optional[str]
    price: ReferencePriceResult
    exposure: ExposureResult
    warning: Optional[str] = None   # set when the card degraded to empty

    @property
    def is_degraded(self) -> bool:
        return self.warning is not None


Resolver = Callable[[Optional[Segment], Sequence[Address], Optional[Set[str]]], Set[str]]


def empty_report(
    subsegment: Subsegment,
    segment: Optional[Segment],
    warning: str,
) -> SubsegmentReport:
    """Card for a subsegment that could not be resolved."""
    return SubsegmentReport(
        subsegment_id=subsegment.id,
        subsegment_name=subsegment.name,
        segment_id=subsegment.segment_id,
        segment_name=segment.name if segment else None,
        price=ReferencePriceResult(
            subsegment_id=subsegment.id,
            segment_name=segment.name if segment else None,
            per_meter_price=None,
            total_price=None,
            representative_area=None,
            total_object_count=0,
            evaluated_object_count=0,
        ),
        exposure=ExposureResult(
            median_days=None,
            average_days=None,
            min_days=None,
            max_days=None,
            sample_count=0,
        ),
        warning=warning,
    )


class SubsegmentAggregator:
    """Builds subsegment cards over one loaded area and tracks drill state."""

    def __init__(
        self,
        objects: Sequence[RealEstateObject],
        addresses: Sequence[Address],
        segments: Sequence[Segment],
        subsegments: Sequence[Subsegment],
        evaluations,
        policy: Optional[RecencyPolicy] = None,
        known_area_ids: Optional[Set[str]] = None,
        resolver: Resolver = resolve_addresses,
    ):
        self.objects = list(objects)
        self.addresses = list(addresses)
        self.segments = list(segments)
        self.subsegments = list(subsegments)
        self.evaluations = evaluations
        self.policy = policy or RecencyPolicy()
        self.known_area_ids = known_area_ids
        self._resolver = resolver

        self._segments_by_id = index_segments(self.segments)
        self._subsegments_by_id = {s.id: s for s in self.subsegments}

        self.scope = Scope.IDLE
        self.segment_id: Optional[str] = None
        self.subsegment_id: Optional[str] = None
        self.working_objects: List[RealEstateObject] = []
        self.saved_unscoped: Optional[List[RealEstateObject]] = None
        self._saved_scope: Optional[Tuple[Scope, Optional[str]]] = None
        self._saved_reports: List[SubsegmentReport] = []

        self.last_reports: List[SubsegmentReport] = []
        self._members: Dict[str, List[RealEstateObject]] = {}

    # -- selection events -------------------------------------------------

    def show_all(self) -> None:
        """Neither segment nor subsegment selected: iterate everything."""
        self._reset_drill()
        self.scope = Scope.UNSCOPED
        self.segment_id = None
        self.subsegment_id = None
        self.working_objects = list(self.objects)

    def select_segment(self, segment_id: Optional[str]) -> None:
        """
        Scope to one segment (None goes back to unscoped).

        Raises:
            MissingReferenceError: No loaded segment has this id
        """
        if segment_id is None:
            self.show_all()
            return

        segment = self._segments_by_id.get(segment_id)
        if segment is None:
            raise MissingReferenceError(f"Segment {segment_id} not found")

        self._reset_drill()
        self.scope = Scope.SEGMENT
        self.segment_id = segment_id
        self.subsegment_id = None
        try:
            address_ids = self._resolver(segment, self.addresses, self.known_area_ids)
        except InvalidFilterError as e:
            logger.warning(f"Segment {segment_id}: {e}")
            address_ids = set()
        self.working_objects = filter_objects_by_addresses(self.objects, address_ids)

    def select_subsegment(self, subsegment_id: str) -> List[RealEstateObject]:
        """Subsegment picker: same as drilling into it."""
        return self.drill_in(subsegment_id)

    def drill_in(self, subsegment_id: str) -> List[RealEstateObject]:
        """
        Narrow the working set to one subsegment's members.

        Uses the membership computed by the last aggregation pass when there
        is one, otherwise resolves it now. A subsegment that cannot be
        resolved drills into an empty set; aggregate() reports why.

        Raises:
            MissingReferenceError: No loaded subsegment has this id
        """
        subsegment = self._subsegments_by_id.get(subsegment_id)
        if subsegment is None:
            raise MissingReferenceError(f"Subsegment {subsegment_id} not found")

        if self.scope == Scope.SUBSEGMENT and self.subsegment_id == subsegment_id:
            return self.working_objects

        members = self._members.get(subsegment_id)
        if members is None:
            try:
                members = self._resolve_members(subsegment, {})
            except (MissingReferenceError, InvalidFilterError) as e:
                logger.warning(f"Subsegment {subsegment_id}: {e}")
                members = []

        if self._saved_scope is None:
            if self.scope == Scope.IDLE:
                self.show_all()
            self.saved_unscoped = self.working_objects
            self._saved_scope = (self.scope, self.segment_id)
            self._saved_reports = self.last_reports

        self.scope = Scope.SUBSEGMENT
        self.subsegment_id = subsegment_id
        self.working_objects = list(members)
        logger.debug(f"Drilled into subsegment {subsegment_id}: {len(members)} objects")
        return self.working_objects

    def drill_out(self) -> List[RealEstateObject]:
        """
        Restore the working set and cards saved by drill_in.

        No-op if not drilled. Nothing is resolved or recomputed.
        """
        if self._saved_scope is None:
            return self.working_objects

        self.scope, self.segment_id = self._saved_scope
        self.subsegment_id = None
        self.working_objects = self.saved_unscoped or []
        self.last_reports = self._saved_reports
        self._reset_drill()
        return self.working_objects

    def toggle(self, subsegment_id: str) -> List[RealEstateObject]:
        """Card click: drill in, or out if this card is already active."""
        if self.scope == Scope.SUBSEGMENT and self.subsegment_id == subsegment_id:
            return self.drill_out()
        return self.drill_in(subsegment_id)

    def _reset_drill(self) -> None:
        self.saved_unscoped = None
        self._saved_scope = None
        self._saved_reports = []

    # -- aggregation ------------------------------------------------------

    def subsegments_in_scope(self) -> List[Subsegment]:
        """
        Subsegments to report on, in segment order then subsegment order.

        Subsegments whose segment isn't loaded come last so they still get a
        (degraded) card.
        """
        if self.scope == Scope.IDLE:
            return []
        if self.scope == Scope.SUBSEGMENT:
            return [self._subsegments_by_id[self.subsegment_id]]

        grouped = group_subsegments(self.subsegments)
        if self.scope == Scope.SEGMENT:
            return list(grouped.get(self.segment_id, []))

        ordered: List[Subsegment] = []
        for segment in self.segments:
            ordered.extend(grouped.get(segment.id, []))
        for segment_id, orphans in grouped.items():
            if segment_id not in self._segments_by_id:
                ordered.extend(orphans)
        return ordered

    def aggregate(self, as_of: datetime) -> List[SubsegmentReport]:
        """
        Compute one card per subsegment in scope.

        A subsegment that cannot be resolved (missing segment or area,
        malformed filter) gets an empty card with a warning; the rest of the
        batch carries on.

        Args:
            as_of: Reference timestamp for recency weighting

        Returns:
            Cards in stable segment/subsegment order

        Raises:
            UnknownEvaluationTagError: An evaluation tag has no weight
        """
        snapshot = as_snapshot(self.evaluations)
        address_cache: Dict[str, Set[str]] = {}
        reports = []
        members_by_subsegment = {}

        for subsegment in self.subsegments_in_scope():
            segment = self._segments_by_id.get(subsegment.segment_id)
            try:
                members = self._resolve_members(subsegment, address_cache)
            except (MissingReferenceError, InvalidFilterError) as e:
                logger.warning(f"Subsegment {subsegment.id} ({subsegment.name}): {e}")
                reports.append(empty_report(subsegment, segment, str(e)))
                continue

            members_by_subsegment[subsegment.id] = members
            reports.append(self._build_report(subsegment, segment, members, snapshot, as_of))

        # Keep memberships from this pass for drill-in; only replace what we saw
        self._members.update(members_by_subsegment)
        self.last_reports = reports

        degraded = sum(1 for r in reports if r.is_degraded)
        logger.info(
            f"Aggregated {len(reports)} subsegments ({self.scope.value})"
            + (f", {degraded} degraded" if degraded else "")
        )
        return reports

    def _build_report(
        self,
        subsegment: Subsegment,
        segment: Segment,
        members: List[RealEstateObject],
        snapshot: EvaluationSnapshot,
        as_of: datetime,
    ) -> SubsegmentReport:
        price = compute_reference_price(
            members,
            snapshot,
            as_of,
            policy=self.policy,
            subsegment_id=subsegment.id,
            segment_name=segment.name,
        )
        exposure = compute_exposure(members, snapshot)
        return SubsegmentReport(
            subsegment_id=subsegment.id,
            subsegment_name=subsegment.name,
            segment_id=segment.id,
            segment_name=segment.name,
            price=price,
            exposure=exposure,
        )

    def _resolve_members(
        self,
        subsegment: Subsegment,
        address_cache: Dict[str, Set[str]],
    ) -> List[RealEstateObject]:
        segment = self._segments_by_id.get(subsegment.segment_id)
        if segment is None:
            raise MissingReferenceError(f"Segment {subsegment.segment_id} not found")
        if segment.map_area_id is None or (
            self.known_area_ids is not None and segment.map_area_id not in self.known_area_ids
        ):
            raise MissingReferenceError(
                f"Area {segment.map_area_id} of segment {segment.id} not found"
            )

        if segment.id not in address_cache:
            address_cache[segment.id] = self._resolver(
                segment, self.addresses, self.known_area_ids
            )
        scoped = filter_objects_by_addresses(self.objects, address_cache[segment.id])
        return filter_objects_by_subsegment(scoped, subsegment)


def format_report_card(report: SubsegmentReport) -> str:
    """Format one subsegment card for display."""
    title = f"{report.segment_name or '?'} / {report.subsegment_name}"
    if report.is_degraded:
        return f"{title}\n  WARNING: {report.warning}"

    price = report.price
    exposure = report.exposure
    lines = [title]
    if price.is_empty:
        lines.append(f"  Price: no evaluated sales ({price.total_object_count} objects)")
    else:
        lines.append(
            f"  Price: {price.per_meter_price:,}/sqm, {price.total_price:,} "
            f"for {price.representative_area:.1f} sqm "
            f"(n={price.evaluated_object_count} of {price.total_object_count})"
        )
    if exposure.is_empty:
        lines.append("  Exposure: N/A")
    else:
        lines.append(
            f"  Exposure: median {exposure.median_days}d, avg {exposure.average_days}d, "
            f"range {exposure.min_days}-{exposure.max_days}d (n={exposure.sample_count})"
        )
    return '\n'.join(lines)
