"""Tests for station status mapping and reconciliation placement."""

import pytest

from models import Placement, Station, TagStatus
from services.stations import (
    STATION_SEQUENCE,
    classify,
    effective_position,
    next_status,
    parse_station,
    station_index,
    status_for_station,
)


class TestStatusMapping:
    """Test cases for station to status mapping."""

    def test_sequence_has_all_stations(self) -> None:
        assert len(STATION_SEQUENCE) == 11
        assert set(STATION_SEQUENCE) == set(Station)
        assert STATION_SEQUENCE[0] == Station.ENCODING
        assert STATION_SEQUENCE[-1] == Station.HANDOVER

    def test_mapped_stations(self) -> None:
        assert status_for_station(Station.FINAL_DISPATCH) == TagStatus.DISPATCHED
        assert status_for_station(Station.HANDOVER) == TagStatus.DELIVERED
        assert status_for_station(Station.RETURN_HO) == TagStatus.RETURNED
        assert status_for_station(Station.GOWN_ISSUE) == TagStatus.SCANNED

    def test_first_scan_moves_encoded_to_scanned(self) -> None:
        assert next_status(TagStatus.ENCODED, Station.PACKING) == TagStatus.SCANNED

    def test_status_never_goes_backwards(self) -> None:
        assert next_status(TagStatus.DISPATCHED, Station.PACKING) == TagStatus.DISPATCHED
        assert next_status(TagStatus.DELIVERED, Station.FINAL_DISPATCH) == TagStatus.DELIVERED
        assert next_status(TagStatus.RETURNED, Station.ADDRESS_LABEL) == TagStatus.RETURNED

    def test_returned_tag_can_be_dispatched(self) -> None:
        assert next_status(TagStatus.RETURNED, Station.FINAL_DISPATCH) == TagStatus.DISPATCHED

    def test_void_has_no_next_status(self) -> None:
        with pytest.raises(ValueError):
            next_status(TagStatus.VOID, Station.PACKING)

    def test_parse_station(self) -> None:
        assert parse_station("gown-issue") == Station.GOWN_ISSUE
        assert parse_station("cafeteria") is None


class TestClassify:
    """Test cases for reconciliation placement."""

    def test_on_track_at_current_station(self) -> None:
        assert classify(TagStatus.SCANNED, Station.REGISTRATION, Station.REGISTRATION) == Placement.ON_TRACK

    def test_advanced_past_station(self) -> None:
        assert classify(TagStatus.SCANNED, Station.GOWN_ISSUE, Station.PACKING) == Placement.ADVANCED

    def test_not_yet_arrived(self) -> None:
        assert classify(TagStatus.ENCODED, Station.ENCODING, Station.PACKING) == Placement.NOT_YET_ARRIVED

    def test_status_floor_overrides_stale_station(self) -> None:
        # Dispatched proves final-dispatch was reached whatever the station says
        assert effective_position(TagStatus.DISPATCHED, Station.PACKING) == station_index(Station.FINAL_DISPATCH)
        assert classify(TagStatus.DISPATCHED, Station.PACKING, Station.ADDRESS_LABEL) == Placement.ADVANCED

