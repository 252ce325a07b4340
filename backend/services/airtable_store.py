"""Airtable tag store for the convocation RFID tracker.

Maps tag records onto the RFID table of the event's Airtable base. Scan
history and box contents are stored as JSON text columns; Airtable has no
append primitive, so every transition rewrites the whole history. A numeric
``Version`` column carries the optimistic concurrency counter.
"""

import json
import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from config import AirtableConfig
from errors import (
    BackendUnavailableError,
    ConcurrentUpdateError,
    DuplicateTagError,
    TagNotFoundError,
)
from models import RfidTag, ScanRecord, TagPatch
from services.tag_store import build_tag_map, pick_live

logger = logging.getLogger(__name__)

# Model field -> Airtable column
FIELD_NAMES: dict[str, str] = {
    "epc": "EPC",
    "type": "Type",
    "convocation_number": "Convocation Number",
    "box_id": "Box ID",
    "box_label": "Box Label",
    "box_contents": "Box Contents",
    "graduate_name": "Graduate Name",
    "tito_ticket_id": "Tito Ticket ID",
    "tito_ticket_slug": "Tito Ticket Slug",
    "status": "Status",
    "current_station": "Current Station",
    "encoded_at": "Encoded At",
    "encoded_by": "Encoded By",
    "last_scan_at": "Last Scan At",
    "last_scan_by": "Last Scan By",
    "last_scan_station": "Last Scan Station",
    "scan_history": "Scan History",
    "version": "Version",
}


def escape_formula_value(value: str) -> str:
    """Escape a string for use inside a double-quoted Airtable formula literal."""
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _load_json_list(raw: Any) -> list[Any]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return value if isinstance(value, list) else []


def _parse_history(raw: Any, record_id: str) -> list[ScanRecord]:
    history: list[ScanRecord] = []
    for entry in _load_json_list(raw):
        try:
            history.append(ScanRecord.model_validate(entry))
        except ValidationError:
            logger.warning(f"Skipping malformed scan history entry on {record_id}: {entry}")
    return history


def _parse_ticket_id(raw: Any) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def parse_record(record: dict[str, Any]) -> RfidTag:
    """Convert an Airtable record into a tag, filling defaults for empty columns.

    Args:
        record: Raw record with ``id``, ``createdTime`` and ``fields``.

    Returns:
        Parsed tag.
    """
    fields = record.get("fields", {})
    box_contents = _load_json_list(fields.get("Box Contents")) if "Box Contents" in fields else None

    return RfidTag(
        id=record["id"],
        epc=fields.get("EPC", ""),
        type=fields.get("Type") or "graduate",
        convocation_number=fields.get("Convocation Number"),
        box_id=fields.get("Box ID"),
        box_label=fields.get("Box Label"),
        box_contents=box_contents,
        graduate_name=fields.get("Graduate Name"),
        tito_ticket_id=_parse_ticket_id(fields.get("Tito Ticket ID")),
        tito_ticket_slug=fields.get("Tito Ticket Slug"),
        status=fields.get("Status") or "encoded",
        current_station=fields.get("Current Station") or "encoding",
        encoded_at=fields.get("Encoded At") or record.get("createdTime"),
        encoded_by=fields.get("Encoded By", ""),
        last_scan_at=fields.get("Last Scan At"),
        last_scan_by=fields.get("Last Scan By"),
        last_scan_station=fields.get("Last Scan Station") or None,
        scan_history=_parse_history(fields.get("Scan History"), record["id"]),
        version=fields.get("Version") or 0,
    )


def parse_records(records: list[dict[str, Any]]) -> list[RfidTag]:
    """Parse a page of records, skipping rows whose cells fall outside the known values."""
    tags: list[RfidTag] = []
    for raw in records:
        try:
            tags.append(parse_record(raw))
        except ValidationError as e:
            logger.warning(f"Skipping unreadable Airtable record {raw.get('id')}: {e.error_count()} invalid fields")
    return tags


def _parse_single(raw: dict[str, Any]) -> RfidTag:
    try:
        return parse_record(raw)
    except ValidationError as e:
        raise BackendUnavailableError(f"Airtable record {raw.get('id')} is unreadable: {e.error_count()} invalid fields") from e


def to_fields(values: dict[str, Any]) -> dict[str, Any]:
    """Convert JSON-mode model values into Airtable columns.

    Args:
        values: Output of ``model_dump(mode="json", exclude_none=True)``.

    Returns:
        Column name -> cell value, with list columns JSON-encoded.
    """
    fields: dict[str, Any] = {}
    for name, value in values.items():
        column = FIELD_NAMES.get(name)
        if column is None:
            continue
        if name in ("scan_history", "box_contents"):
            fields[column] = json.dumps(value)
        elif name == "tito_ticket_id":
            fields[column] = str(value)
        else:
            fields[column] = value
    return fields


def _history_json(history: list[ScanRecord]) -> list[dict[str, Any]]:
    return [s.model_dump(mode="json", by_alias=True, exclude_none=True) for s in history]


class AirtableTagStore:
    """Tag store backed by an Airtable table."""

    def __init__(
        self,
        config: AirtableConfig,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not config.api_key or not config.base_id or not config.rfid_table:
            raise ValueError("Airtable configuration missing (api_key, base_id, rfid_table)")
        self._config = config
        self._client = client
        self._table_url = f"{config.api_base.rstrip('/')}/{config.base_id}/{config.rfid_table}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._config.timeout_seconds)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str = "", **kwargs: Any) -> dict[str, Any]:
        """Send a request to the RFID table.

        Raises:
            TagNotFoundError: Airtable answered 404 for a record path.
            BackendUnavailableError: Network failure or any other non-2xx answer.
        """
        client = self._get_client()
        try:
            response = await client.request(
                method,
                f"{self._table_url}{path}",
                headers={"Authorization": f"Bearer {self._config.api_key}"},
                **kwargs,
            )
        except httpx.HTTPError as e:
            logger.error(f"Airtable network error: {e}")
            raise BackendUnavailableError(f"Network error: {e}") from e

        if response.status_code == 404 and path:
            raise TagNotFoundError(f"Tag record {path.lstrip('/')} not found")
        if response.is_error:
            logger.error(f"Airtable error: {response.status_code} - {response.text}")
            raise BackendUnavailableError(f"Airtable error: {response.status_code} - {response.text}")
        return response.json()

    async def _find(self, formula: str) -> list[RfidTag]:
        data = await self._request("GET", "", params={"filterByFormula": formula})
        return parse_records(data.get("records", []))

    # --- Lookups ---

    async def get_tag_by_epc(self, epc: str) -> Optional[RfidTag]:
        return pick_live(await self._find(f'{{EPC}}="{escape_formula_value(epc)}"'))

    async def get_tag_by_convocation_number(self, convocation_number: str) -> Optional[RfidTag]:
        value = escape_formula_value(convocation_number.upper().strip())
        return pick_live(await self._find(f'{{Convocation Number}}="{value}"'))

    async def get_tag_by_id(self, tag_id: str) -> RfidTag:
        return _parse_single(await self._request("GET", f"/{tag_id}"))

    async def fetch_all_tags(self) -> list[RfidTag]:
        """Fetch every record, following Airtable's offset pagination."""
        tags: list[RfidTag] = []
        offset: Optional[str] = None

        while True:
            params: dict[str, Any] = {"pageSize": self._config.page_size}
            if offset:
                params["offset"] = offset
            data = await self._request("GET", "", params=params)
            tags.extend(parse_records(data.get("records", [])))
            offset = data.get("offset")
            if not offset:
                break

        return tags

    async def get_tag_map(self) -> dict[str, RfidTag]:
        tags = await self.fetch_all_tags()
        logger.info(f"Fetched {len(tags)} tag records from Airtable")
        return build_tag_map(tags)

    async def ping(self) -> bool:
        try:
            await self._request("GET", "", params={"maxRecords": 1})
            return True
        except BackendUnavailableError:
            return False

    # --- Writes ---

    async def create_tag(self, tag: RfidTag) -> RfidTag:
        existing = await self.get_tag_by_epc(tag.epc)
        if existing and not existing.is_void:
            raise DuplicateTagError(f"EPC {tag.epc} already exists in the system", existing)

        values = tag.model_dump(mode="json", exclude_none=True, exclude={"id"})
        values["scan_history"] = _history_json(tag.scan_history)
        values["version"] = 0

        data = await self._request("POST", "", json={"fields": to_fields(values), "typecast": True})
        return tag.model_copy(update={"id": data["id"], "version": 0})

    async def update_tag(
        self,
        tag_id: str,
        patch: TagPatch,
        expected_version: Optional[int] = None,
    ) -> RfidTag:
        """Apply a partial update.

        Airtable has no conditional write, so the version check re-reads the
        record right before the PATCH. This narrows the race window to one
        round trip; in-process writers are serialised by the lifecycle engine.
        """
        current = await self.get_tag_by_id(tag_id)
        if expected_version is not None and current.version != expected_version:
            raise ConcurrentUpdateError(
                f"Tag {current.epc} changed (version {expected_version} -> {current.version})"
            )

        values = patch.model_dump(mode="json", exclude_none=True)
        if patch.scan_history is not None:
            values["scan_history"] = _history_json(patch.scan_history)
        values["version"] = current.version + 1

        data = await self._request(
            "PATCH", f"/{tag_id}", json={"fields": to_fields(values), "typecast": True}
        )
        return _parse_single(data)
