"""Station pipeline rules.

The eleven stations form one ordered pipeline. A tag's ``status`` is a coarse
phase derived from the stations it has reached; it only moves forward, except
into ``void``. Reconciliation compares a tag's effective pipeline position
against a target station.
"""

from typing import Optional

from models import Placement, Station, TagStatus

STATION_SEQUENCE: tuple[Station, ...] = (
    Station.ENCODING,
    Station.PACKING,
    Station.DISPATCH_VENUE,
    Station.REGISTRATION,
    Station.GOWN_ISSUE,
    Station.GOWN_RETURN,
    Station.CERTIFICATE_COLLECTION,
    Station.RETURN_HO,
    Station.ADDRESS_LABEL,
    Station.FINAL_DISPATCH,
    Station.HANDOVER,
)

_STATION_INDEX: dict[Station, int] = {s: i for i, s in enumerate(STATION_SEQUENCE)}

# Station -> status it implies; unlisted stations imply SCANNED
STATION_STATUS: dict[Station, TagStatus] = {
    Station.ENCODING: TagStatus.ENCODED,
    Station.RETURN_HO: TagStatus.RETURNED,
    Station.FINAL_DISPATCH: TagStatus.DISPATCHED,
    Station.HANDOVER: TagStatus.DELIVERED,
}

STATUS_RANK: dict[TagStatus, int] = {
    TagStatus.ENCODED: 0,
    TagStatus.SCANNED: 1,
    TagStatus.RETURNED: 2,
    TagStatus.DISPATCHED: 3,
    TagStatus.DELIVERED: 4,
}

# Earliest station a status proves the tag has reached
_STATUS_FLOOR: dict[TagStatus, Station] = {
    TagStatus.ENCODED: Station.ENCODING,
    TagStatus.SCANNED: Station.ENCODING,
    TagStatus.RETURNED: Station.RETURN_HO,
    TagStatus.DISPATCHED: Station.FINAL_DISPATCH,
    TagStatus.DELIVERED: Station.HANDOVER,
}


def station_index(station: Station) -> int:
    return _STATION_INDEX[station]


def parse_station(value: str) -> Optional[Station]:
    """Parse a station identifier, None for anything outside the closed set."""
    try:
        return Station(value)
    except ValueError:
        return None


def status_for_station(station: Station) -> TagStatus:
    return STATION_STATUS.get(station, TagStatus.SCANNED)


def next_status(current: TagStatus, station: Station) -> TagStatus:
    """Status after a scan at ``station``.

    Args:
        current: Status before the scan. Must not be VOID.
        station: Station of the scan.

    Returns:
        The higher-ranked of the current status and the station's status.
    """
    if current == TagStatus.VOID:
        raise ValueError("Void tags have no next status")
    mapped = status_for_station(station)
    return mapped if STATUS_RANK[mapped] > STATUS_RANK[current] else current


def effective_position(status: TagStatus, current_station: Station) -> int:
    """Pipeline index a tag has provably reached."""
    floor = _STATUS_FLOOR.get(status, Station.ENCODING)
    return max(station_index(current_station), station_index(floor))


def classify(status: TagStatus, current_station: Station, target: Station) -> Placement:
    """Place a non-void tag relative to a target station.

    Examples:
        >>> classify(TagStatus.SCANNED, Station.PACKING, Station.PACKING)
        <Placement.ON_TRACK: 'on-track'>
        >>> classify(TagStatus.DISPATCHED, Station.PACKING, Station.REGISTRATION)
        <Placement.ADVANCED: 'advanced'>
    """
    position = effective_position(status, current_station)
    target_index = station_index(target)
    if position == target_index:
        return Placement.ON_TRACK
    if position > target_index:
        return Placement.ADVANCED
    return Placement.NOT_YET_ARRIVED
