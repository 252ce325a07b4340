"""Reconciliation and dashboard aggregation.

Read-only views recomputed from the cached tag population on every call.
"""

import logging
from typing import Optional

from models import (
    BoxSummary,
    DashboardStats,
    Placement,
    ReconciliationCounts,
    ReconciliationItem,
    ReconciliationReport,
    RecentScan,
    RfidTag,
    Station,
    TagStatus,
    TagType,
)
from services.cache import TagCache
from services.stations import STATION_SEQUENCE, classify

logger = logging.getLogger(__name__)


def compute_dashboard_stats(tags: list[RfidTag], recent_limit: int = 50) -> DashboardStats:
    """Single pass over the population.

    Args:
        tags: Every tag, void ones included.
        recent_limit: Size of the recent scan window.

    Returns:
        Counts by type, status and current station, recent scans newest
        first, and box totals.
    """
    by_status = {status: 0 for status in TagStatus}
    by_station = {station: 0 for station in STATION_SEQUENCE}
    graduates = boxes = items_in_boxes = 0
    scans: list[RecentScan] = []

    for tag in tags:
        by_status[tag.status] += 1
        by_station[tag.current_station] += 1
        if tag.type == TagType.BOX:
            boxes += 1
            items_in_boxes += len(tag.box_contents or [])
        else:
            graduates += 1
        scans.extend(RecentScan(**scan.model_dump(), epc=tag.epc) for scan in tag.scan_history)

    scans.sort(key=lambda s: s.timestamp, reverse=True)

    return DashboardStats(
        total_tags=len(tags),
        graduate_tags=graduates,
        box_tags=boxes,
        encoded=by_status[TagStatus.ENCODED],
        scanned=by_status[TagStatus.SCANNED],
        dispatched=by_status[TagStatus.DISPATCHED],
        delivered=by_status[TagStatus.DELIVERED],
        returned=by_status[TagStatus.RETURNED],
        void=by_status[TagStatus.VOID],
        station_breakdown=by_station,
        recent_scans=scans[:recent_limit],
        box_summary=BoxSummary(total_boxes=boxes, items_in_boxes=items_in_boxes),
    )


def _item(tag: RfidTag, scanned_here: bool) -> ReconciliationItem:
    return ReconciliationItem(
        epc=tag.epc,
        type=tag.type,
        graduate_name=tag.graduate_name,
        convocation_number=tag.convocation_number,
        status=tag.status,
        current_station=tag.current_station,
        last_scan_at=tag.last_scan_at,
        scanned_at_station=scanned_here,
    )


def compute_reconciliation(tags: list[RfidTag], station: Station) -> ReconciliationReport:
    """Place every non-void tag relative to ``station``.

    Each live tag lands in exactly one of on-track, advanced or
    not-yet-arrived. Advanced tags with no scan at the station are also
    listed as skipped: they went past it without being recorded there.
    """
    station = Station(station)
    buckets: dict[Placement, list[ReconciliationItem]] = {p: [] for p in Placement}
    skipped: list[ReconciliationItem] = []
    void_tags = scanned_here_count = 0

    for tag in tags:
        if tag.is_void:
            void_tags += 1
            continue

        scanned_here = any(s.station == station for s in tag.scan_history)
        if scanned_here:
            scanned_here_count += 1

        placement = classify(tag.status, tag.current_station, station)
        item = _item(tag, scanned_here)
        buckets[placement].append(item)
        if placement == Placement.ADVANCED and not scanned_here:
            skipped.append(item)

    return ReconciliationReport(
        station=station,
        total_tags=sum(len(b) for b in buckets.values()),
        void_tags=void_tags,
        scanned_at_station=scanned_here_count,
        counts=ReconciliationCounts(
            on_track=len(buckets[Placement.ON_TRACK]),
            advanced=len(buckets[Placement.ADVANCED]),
            not_yet_arrived=len(buckets[Placement.NOT_YET_ARRIVED]),
        ),
        on_track=buckets[Placement.ON_TRACK],
        advanced=buckets[Placement.ADVANCED],
        not_yet_arrived=buckets[Placement.NOT_YET_ARRIVED],
        skipped=skipped,
    )


class ReconciliationService:
    """Dashboard and reconciliation queries over the tag cache."""

    def __init__(self, cache: TagCache, recent_limit: Optional[int] = None) -> None:
        self._cache = cache
        self.recent_limit = recent_limit

    async def get_dashboard_stats(self, recent_limit: Optional[int] = None) -> DashboardStats:
        tag_map = await self._cache.get()
        limit = recent_limit or self.recent_limit or 50
        return compute_dashboard_stats(list(tag_map.values()), limit)

    async def refresh_dashboard_stats(self, recent_limit: Optional[int] = None) -> DashboardStats:
        """Drop the cached population and recompute."""
        self._cache.clear()
        return await self.get_dashboard_stats(recent_limit)

    async def get_reconciliation_for_station(self, station: Station) -> ReconciliationReport:
        tag_map = await self._cache.get()
        report = compute_reconciliation(list(tag_map.values()), station)
        logger.debug(
            f"Reconciliation at {report.station.value}: {report.counts.on_track} on track, "
            f"{report.counts.advanced} advanced, {report.counts.not_yet_arrived} not yet arrived"
        )
        return report
