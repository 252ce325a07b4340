"""Tests for the Airtable tag store against a mocked HTTP transport."""

import json
from typing import Any, Callable

import httpx
import pytest

from config import AirtableConfig
from errors import BackendUnavailableError, ConcurrentUpdateError, DuplicateTagError, TagNotFoundError
from factories import make_tag
from models import Station, TagPatch, TagStatus, TagType
from services.airtable_store import AirtableTagStore, escape_formula_value, parse_record

TABLE_PATH = "/v0/appBase/RFID"


def record(record_id: str, **fields: Any) -> dict[str, Any]:
    return {"id": record_id, "createdTime": "2025-01-10T08:00:00.000Z", "fields": fields}


def graduate_fields(epc: str = "120AEC1001", **overrides: Any) -> dict[str, Any]:
    fields = {
        "EPC": epc,
        "Type": "graduate",
        "Convocation Number": epc,
        "Status": "scanned",
        "Current Station": "packing",
        "Encoded At": "2025-01-10T09:00:00+00:00",
        "Encoded By": "encoder-1",
        "Scan History": json.dumps([
            {"station": "encoding", "timestamp": "2025-01-10T09:00:00+00:00", "scannedBy": "encoder-1", "action": "Encoded"},
            {"station": "packing", "timestamp": "2025-01-10T10:00:00+00:00", "scannedBy": "packer", "action": "Scanned"},
        ]),
        "Version": 2,
    }
    fields.update(overrides)
    return fields


class Recorder:
    """MockTransport handler that records requests and delegates responses."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]) -> None:
        self.requests: list[httpx.Request] = []
        self._respond = respond

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._respond(request)

    def methods(self) -> list[str]:
        return [r.method for r in self.requests]


def make_store(respond: Callable[[httpx.Request], httpx.Response], **config: Any) -> tuple[AirtableTagStore, Recorder]:
    recorder = Recorder(respond)
    values = {"api_key": "key", "base_id": "appBase", "rfid_table": "RFID"}
    values.update(config)
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return AirtableTagStore(AirtableConfig(**values), client=client), recorder


class TestParsing:
    """Test cases for record parsing."""

    def test_parse_full_record(self) -> None:
        tag = parse_record(record("rec1", **graduate_fields(**{"Tito Ticket ID": "42"})))

        assert tag.id == "rec1"
        assert tag.status == TagStatus.SCANNED
        assert tag.current_station == Station.PACKING
        assert tag.tito_ticket_id == 42
        assert tag.version == 2
        assert [s.scanned_by for s in tag.scan_history] == ["encoder-1", "packer"]

    def test_empty_columns_get_defaults(self) -> None:
        tag = parse_record(record("rec2", EPC="BOX-07", **{"Scan History": "not json"}))

        assert tag.type == TagType.GRADUATE
        assert tag.status == TagStatus.ENCODED
        assert tag.current_station == Station.ENCODING
        assert tag.encoded_at.year == 2025
        assert tag.scan_history == []
        assert tag.box_contents is None
        assert tag.version == 0

    def test_malformed_history_entries_are_skipped(self) -> None:
        history = json.dumps([
            {"station": "cafeteria", "timestamp": "2025-01-10T09:00:00Z", "scannedBy": "x", "action": "?"},
            {"station": "packing", "timestamp": "2025-01-10T10:00:00Z", "scannedBy": "packer", "action": "Scanned"},
        ])

        tag = parse_record(record("rec3", **graduate_fields(**{"Scan History": history})))

        assert [s.station for s in tag.scan_history] == [Station.PACKING]

    def test_box_contents_column(self) -> None:
        tag = parse_record(record("rec4", EPC="BOX-07", Type="box", **{"Box Contents": '["120AEC1001"]'}))

        assert tag.box_contents == ["120AEC1001"]

    def test_escape_formula_value(self) -> None:
        assert escape_formula_value('A"B\\C') == 'A\\"B\\\\C'


class TestReads:
    """Test cases for lookups and pagination."""

    @pytest.mark.asyncio
    async def test_get_tag_by_epc_uses_formula(self) -> None:
        store, recorder = make_store(lambda r: httpx.Response(200, json={"records": [record("rec1", **graduate_fields())]}))

        tag = await store.get_tag_by_epc("120AEC1001")

        assert tag is not None
        assert tag.id == "rec1"
        request = recorder.requests[0]
        assert request.url.path == TABLE_PATH
        assert request.url.params["filterByFormula"] == '{EPC}="120AEC1001"'
        assert request.headers["Authorization"] == "Bearer key"

    @pytest.mark.asyncio
    async def test_get_tag_by_epc_prefers_live_record(self) -> None:
        records = [
            record("recOld", **graduate_fields(Status="void")),
            record("recNew", **graduate_fields()),
        ]
        store, _ = make_store(lambda r: httpx.Response(200, json={"records": records}))

        tag = await store.get_tag_by_epc("120AEC1001")

        assert tag.id == "recNew"

    @pytest.mark.asyncio
    async def test_fetch_all_follows_offsets(self) -> None:
        pages = {
            None: {"records": [record("rec1", **graduate_fields("1AEC1")), record("rec2", **graduate_fields("2AEC1"))], "offset": "itrA"},
            "itrA": {"records": [record("rec3", **graduate_fields("3AEC1"))]},
        }
        store, recorder = make_store(lambda r: httpx.Response(200, json=pages[r.url.params.get("offset")]), page_size=2)

        tags = await store.fetch_all_tags()

        assert [t.epc for t in tags] == ["1AEC1", "2AEC1", "3AEC1"]
        assert len(recorder.requests) == 2
        assert all(r.url.params["pageSize"] == "2" for r in recorder.requests)
        assert recorder.requests[1].url.params["offset"] == "itrA"

    @pytest.mark.asyncio
    async def test_unreadable_record_is_skipped_in_tag_map(self) -> None:
        records = [
            record("rec1", **graduate_fields("1AEC1")),
            record("rec2", **graduate_fields("2AEC1", Status="lost")),
            record("rec3", **graduate_fields("3AEC1", **{"Current Station": "cafeteria"})),
        ]
        store, _ = make_store(lambda r: httpx.Response(200, json={"records": records}))

        tag_map = await store.get_tag_map()

        assert list(tag_map) == ["1AEC1"]

    @pytest.mark.asyncio
    async def test_unreadable_single_record_is_unavailable(self) -> None:
        store, _ = make_store(lambda r: httpx.Response(200, json=record("rec2", **graduate_fields(Status="lost"))))

        with pytest.raises(BackendUnavailableError):
            await store.get_tag_by_id("rec2")

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self) -> None:
        store, _ = make_store(lambda r: httpx.Response(503, text="Service Unavailable"))

        with pytest.raises(BackendUnavailableError):
            await store.fetch_all_tags()
        assert await store.ping() is False

    @pytest.mark.asyncio
    async def test_network_error_is_unavailable(self) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        store, _ = make_store(respond)

        with pytest.raises(BackendUnavailableError):
            await store.get_tag_by_epc("120AEC1001")

    def test_missing_configuration(self) -> None:
        with pytest.raises(ValueError):
            AirtableTagStore(AirtableConfig(api_key="key", base_id="appBase"))


class TestWrites:
    """Test cases for create and update."""

    @pytest.mark.asyncio
    async def test_create_posts_fields(self) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, json={"records": []})
            return httpx.Response(200, json=record("recNew", **json.loads(request.content)["fields"]))

        store, recorder = make_store(respond)

        created = await store.create_tag(make_tag("120AEC1001", tito_ticket_id=42))

        assert created.id == "recNew"
        assert recorder.methods() == ["GET", "POST"]
        body = json.loads(recorder.requests[1].content)
        assert body["typecast"] is True
        fields = body["fields"]
        assert fields["EPC"] == "120AEC1001"
        assert fields["Type"] == "graduate"
        assert fields["Tito Ticket ID"] == "42"
        assert fields["Version"] == 0
        assert json.loads(fields["Scan History"])[0]["scannedBy"] == "tester"

    @pytest.mark.asyncio
    async def test_create_rejects_live_duplicate(self) -> None:
        store, recorder = make_store(lambda r: httpx.Response(200, json={"records": [record("rec1", **graduate_fields())]}))

        with pytest.raises(DuplicateTagError):
            await store.create_tag(make_tag("120AEC1001"))
        assert recorder.methods() == ["GET"]

    @pytest.mark.asyncio
    async def test_update_bumps_version(self) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, json=record("rec1", **graduate_fields()))
            patched = graduate_fields(**json.loads(request.content)["fields"])
            return httpx.Response(200, json=record("rec1", **patched))

        store, recorder = make_store(respond)

        updated = await store.update_tag(
            "rec1", TagPatch(status=TagStatus.DISPATCHED, current_station=Station.FINAL_DISPATCH), expected_version=2
        )

        assert recorder.methods() == ["GET", "PATCH"]
        assert recorder.requests[1].url.path == f"{TABLE_PATH}/rec1"
        fields = json.loads(recorder.requests[1].content)["fields"]
        assert fields == {"Status": "dispatched", "Current Station": "final-dispatch", "Version": 3}
        assert updated.version == 3
        assert updated.status == TagStatus.DISPATCHED

    @pytest.mark.asyncio
    async def test_stale_version_skips_patch(self) -> None:
        store, recorder = make_store(lambda r: httpx.Response(200, json=record("rec1", **graduate_fields())))

        with pytest.raises(ConcurrentUpdateError):
            await store.update_tag("rec1", TagPatch(status=TagStatus.DISPATCHED), expected_version=1)
        assert recorder.methods() == ["GET"]

    @pytest.mark.asyncio
    async def test_update_missing_record(self) -> None:
        store, _ = make_store(lambda r: httpx.Response(404, json={"error": "NOT_FOUND"}))

        with pytest.raises(TagNotFoundError):
            await store.update_tag("recGone", TagPatch(status=TagStatus.SCANNED))
