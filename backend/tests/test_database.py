"""Tests for the SQLite tag store."""

import pytest

from database import SqliteTagStore
from errors import ConcurrentUpdateError, DuplicateTagError, TagNotFoundError
from factories import make_tag
from models import ScanRecord, Station, TagPatch, TagStatus, TagType
from services.tag_store import build_tag_map, pick_live


class TestCreateAndLookup:
    """Test cases for inserting and reading tags."""

    @pytest.mark.asyncio
    async def test_create_assigns_id_and_version(self, store: SqliteTagStore) -> None:
        created = await store.create_tag(make_tag("120AEC1001"))

        assert created.id is not None
        assert created.id.startswith("rec")
        assert created.version == 0

        fetched = await store.get_tag_by_epc("120AEC1001")
        assert fetched is not None
        assert fetched.id == created.id
        assert fetched.type == TagType.GRADUATE
        assert len(fetched.scan_history) == 1
        assert fetched.scan_history[0].station == Station.ENCODING

    @pytest.mark.asyncio
    async def test_unknown_epc_returns_none(self, store: SqliteTagStore) -> None:
        assert await store.get_tag_by_epc("NOPE") is None

    @pytest.mark.asyncio
    async def test_lookup_by_convocation_number(self, store: SqliteTagStore) -> None:
        await store.create_tag(make_tag("120AEC1001"))

        tag = await store.get_tag_by_convocation_number(" 120aec1001 ")

        assert tag is not None
        assert tag.epc == "120AEC1001"

    @pytest.mark.asyncio
    async def test_box_contents_round_trip(self, store: SqliteTagStore) -> None:
        await store.create_tag(make_tag("BOX-07", TagType.BOX, box_contents=["120AEC1001"]))

        box = await store.get_tag_by_epc("BOX-07")

        assert box is not None
        assert box.box_id == "07"
        assert box.box_contents == ["120AEC1001"]

    @pytest.mark.asyncio
    async def test_duplicate_live_epc_rejected(self, store: SqliteTagStore) -> None:
        first = await store.create_tag(make_tag("120AEC1001"))

        with pytest.raises(DuplicateTagError) as exc_info:
            await store.create_tag(make_tag("120AEC1001"))

        assert exc_info.value.existing.id == first.id

    @pytest.mark.asyncio
    async def test_void_record_does_not_block_store_insert(self, store: SqliteTagStore) -> None:
        """The store only guards live records; policy for void EPCs is the engine's."""
        await store.create_tag(make_tag("120AEC1001", status=TagStatus.VOID))

        live = await store.create_tag(make_tag("120AEC1001"))

        fetched = await store.get_tag_by_epc("120AEC1001")
        assert fetched is not None
        assert fetched.id == live.id
        assert len(await store.fetch_all_tags()) == 2


class TestUpdate:
    """Test cases for compare-and-swap updates."""

    @pytest.mark.asyncio
    async def test_update_bumps_version(self, store: SqliteTagStore) -> None:
        created = await store.create_tag(make_tag("120AEC1001"))
        record = ScanRecord(
            station=Station.PACKING,
            timestamp=created.encoded_at,
            scanned_by="packer",
            action="Scanned at packing",
        )

        updated = await store.update_tag(
            created.id,
            TagPatch(
                status=TagStatus.SCANNED,
                current_station=Station.PACKING,
                scan_history=[*created.scan_history, record],
            ),
            expected_version=0,
        )

        assert updated.version == 1
        assert updated.status == TagStatus.SCANNED
        assert updated.current_station == Station.PACKING
        assert [s.station for s in updated.scan_history] == [Station.ENCODING, Station.PACKING]
        # Untouched fields survive
        assert updated.convocation_number == "120AEC1001"

    @pytest.mark.asyncio
    async def test_stale_version_is_rejected(self, store: SqliteTagStore) -> None:
        created = await store.create_tag(make_tag("120AEC1001"))
        await store.update_tag(created.id, TagPatch(status=TagStatus.SCANNED), expected_version=0)

        with pytest.raises(ConcurrentUpdateError):
            await store.update_tag(created.id, TagPatch(status=TagStatus.DISPATCHED), expected_version=0)

        current = await store.get_tag_by_epc("120AEC1001")
        assert current.status == TagStatus.SCANNED
        assert current.version == 1

    @pytest.mark.asyncio
    async def test_update_missing_record(self, store: SqliteTagStore) -> None:
        with pytest.raises(TagNotFoundError):
            await store.update_tag("recmissing", TagPatch(status=TagStatus.SCANNED))

    @pytest.mark.asyncio
    async def test_ping(self, store: SqliteTagStore) -> None:
        assert await store.ping() is True


class TestTagMap:
    """Test cases for live-record selection."""

    def test_pick_live_prefers_non_void(self) -> None:
        void = make_tag("120AEC1001", status=TagStatus.VOID)
        live = make_tag("120AEC1001", status=TagStatus.SCANNED)

        assert pick_live([void, live]) is live
        assert pick_live([live, void]) is live
        assert pick_live([]) is None

    def test_build_tag_map_keys_by_epc(self) -> None:
        tags = [
            make_tag("120AEC1001", status=TagStatus.VOID),
            make_tag("120AEC1001"),
            make_tag("BOX-07", TagType.BOX),
        ]

        tag_map = build_tag_map(tags)

        assert set(tag_map) == {"120AEC1001", "BOX-07"}
        assert tag_map["120AEC1001"].status == TagStatus.ENCODED
