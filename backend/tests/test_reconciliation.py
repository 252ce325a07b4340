"""Tests for dashboard and reconciliation aggregation."""

from unittest.mock import AsyncMock

import pytest

from factories import make_tag
from models import RfidTag, Station, TagStatus, TagType
from services.cache import TagCache
from services.reconciliation import (
    ReconciliationService,
    compute_dashboard_stats,
    compute_reconciliation,
)

PIPELINE = [
    Station.ENCODING,
    Station.PACKING,
    Station.DISPATCH_VENUE,
    Station.REGISTRATION,
    Station.GOWN_ISSUE,
]


@pytest.fixture
def population() -> list[RfidTag]:
    return [
        # At registration and scanned there
        make_tag("1AEC1", status=TagStatus.SCANNED, station=Station.REGISTRATION, history=PIPELINE[:4]),
        # Went past registration without a scan there
        make_tag(
            "2AEC1",
            status=TagStatus.SCANNED,
            station=Station.GOWN_ISSUE,
            history=[Station.ENCODING, Station.PACKING, Station.GOWN_ISSUE],
        ),
        # Still at encoding
        make_tag("3AEC1"),
        # Dispatched while the station field still says packing
        make_tag("4AEC1", status=TagStatus.DISPATCHED, station=Station.PACKING, history=PIPELINE[:4]),
        make_tag("5AEC1", status=TagStatus.VOID, station=Station.REGISTRATION, history=PIPELINE[:4]),
        make_tag("BOX-07", TagType.BOX, box_contents=["1AEC1", "2AEC1"]),
    ]


class TestReconciliation:
    """Test cases for per-station reconciliation."""

    def test_every_live_tag_is_placed_once(self, population: list[RfidTag]) -> None:
        report = compute_reconciliation(population, Station.REGISTRATION)

        live = [t for t in population if not t.is_void]
        assert report.total_tags == len(live)
        assert report.counts.on_track + report.counts.advanced + report.counts.not_yet_arrived == len(live)
        placed = [i.epc for i in report.on_track + report.advanced + report.not_yet_arrived]
        assert sorted(placed) == sorted(t.epc for t in live)

    def test_buckets(self, population: list[RfidTag]) -> None:
        report = compute_reconciliation(population, Station.REGISTRATION)

        assert [i.epc for i in report.on_track] == ["1AEC1"]
        assert [i.epc for i in report.advanced] == ["2AEC1", "4AEC1"]
        assert [i.epc for i in report.not_yet_arrived] == ["3AEC1", "BOX-07"]
        assert report.void_tags == 1

    def test_skipped_and_scanned_here(self, population: list[RfidTag]) -> None:
        report = compute_reconciliation(population, Station.REGISTRATION)

        assert [i.epc for i in report.skipped] == ["2AEC1"]
        assert report.scanned_at_station == 2
        assert report.on_track[0].scanned_at_station is True

    def test_first_station(self, population: list[RfidTag]) -> None:
        report = compute_reconciliation(population, Station.ENCODING)

        assert report.counts.not_yet_arrived == 0
        assert sorted(i.epc for i in report.on_track) == ["3AEC1", "BOX-07"]
        assert report.skipped == []

    def test_empty_population(self) -> None:
        report = compute_reconciliation([], Station.HANDOVER)

        assert report.total_tags == 0
        assert report.counts.on_track == 0


class TestDashboard:
    """Test cases for dashboard statistics."""

    def test_counts(self, population: list[RfidTag]) -> None:
        stats = compute_dashboard_stats(population)

        assert stats.total_tags == 6
        assert stats.graduate_tags == 5
        assert stats.box_tags == 1
        assert stats.encoded == 2
        assert stats.scanned == 2
        assert stats.dispatched == 1
        assert stats.void == 1
        assert stats.box_summary.total_boxes == 1
        assert stats.box_summary.items_in_boxes == 2

    def test_station_breakdown_lists_every_station(self, population: list[RfidTag]) -> None:
        stats = compute_dashboard_stats(population)

        assert set(stats.station_breakdown) == set(Station)
        assert stats.station_breakdown[Station.ENCODING] == 2
        assert stats.station_breakdown[Station.REGISTRATION] == 2
        assert stats.station_breakdown[Station.HANDOVER] == 0

    def test_recent_scans_newest_first(self, population: list[RfidTag]) -> None:
        stats = compute_dashboard_stats(population, recent_limit=5)

        assert len(stats.recent_scans) == 5
        stamps = [s.timestamp for s in stats.recent_scans]
        assert stamps == sorted(stamps, reverse=True)
        assert stats.recent_scans[0].station == Station.REGISTRATION


class TestReconciliationService:
    """Test cases for the cached query service."""

    @pytest.mark.asyncio
    async def test_refresh_refetches_population(self, population: list[RfidTag]) -> None:
        loader = AsyncMock(return_value={t.epc: t for t in population})
        service = ReconciliationService(TagCache(loader), recent_limit=3)

        stats = await service.get_dashboard_stats()
        await service.get_reconciliation_for_station(Station.PACKING)
        assert loader.await_count == 1
        assert len(stats.recent_scans) == 3

        await service.refresh_dashboard_stats()
        assert loader.await_count == 2
