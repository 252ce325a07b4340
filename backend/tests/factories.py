"""Builders for unsaved tags used across the test modules."""

from datetime import datetime, timezone

from models import RfidTag, ScanRecord, Station, TagStatus, TagType


def make_tag(
    epc: str,
    tag_type: TagType = TagType.GRADUATE,
    status: TagStatus = TagStatus.ENCODED,
    station: Station = Station.ENCODING,
    history: list[Station] | None = None,
    **extra,
) -> RfidTag:
    """Build an unsaved tag whose history visits ``history`` (default: just encoding)."""
    when = datetime(2025, 1, 10, 9, 0, tzinfo=timezone.utc)
    stations = history or [Station.ENCODING]
    return RfidTag(
        epc=epc,
        type=tag_type,
        convocation_number=epc if tag_type == TagType.GRADUATE else None,
        box_id=epc.removeprefix("BOX-") if tag_type == TagType.BOX else None,
        status=status,
        current_station=station,
        encoded_at=when,
        encoded_by="tester",
        scan_history=[
            ScanRecord(station=s, timestamp=when.replace(minute=i), scanned_by="tester", action=f"at {s.value}")
            for i, s in enumerate(stations)
        ],
        **extra,
    )


def make_wd01(uhf_epc: str, tail: str = "AABB") -> str:
    """Build the TID read a WD01 encoder reports for a UHF EPC."""
    pairs = ["30", "00"]
    pairs += [uhf_epc[i:i + 2] for i in range(0, len(uhf_epc), 2)]
    pairs += [tail[:2], tail[2:]]
    return "".join(reversed(pairs))
