"""SQLite tag store for the convocation RFID tracker.

Provides async tag persistence using aiosqlite. Used when the tracker runs
without Airtable (development, an offline venue laptop) and by the tests.

Data Flow:
- Encode station creates one row per physical tag
- Station scans rewrite the row with the next scan_history and bump `version`
- Void is a status, rows are never deleted
"""

import json
import logging
import sqlite3
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from errors import (
    BackendUnavailableError,
    ConcurrentUpdateError,
    DuplicateTagError,
    TagNotFoundError,
)
from models import RfidTag, ScanRecord, TagPatch
from services.tag_store import build_tag_map, pick_live

logger = logging.getLogger(__name__)


# --- Schema Definitions ---

# NOTE: epc is unique among live rows only; a voided row keeps its EPC
SCHEMA_RFID_TAG = """
CREATE TABLE IF NOT EXISTS rfid_tag (
    id                  TEXT PRIMARY KEY,
    epc                 TEXT NOT NULL,
    type                TEXT NOT NULL,
    convocation_number  TEXT,
    box_id              TEXT,
    box_label           TEXT,
    box_contents        TEXT,
    graduate_name       TEXT,
    tito_ticket_id      INTEGER,
    tito_ticket_slug    TEXT,
    status              TEXT NOT NULL,
    current_station     TEXT NOT NULL,
    encoded_at          TEXT NOT NULL,
    encoded_by          TEXT NOT NULL,
    last_scan_at        TEXT,
    last_scan_by        TEXT,
    last_scan_station   TEXT,
    scan_history        TEXT NOT NULL,
    version             INTEGER NOT NULL DEFAULT 0,
    created_at          INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_rfid_tag_epc ON rfid_tag(epc);
CREATE INDEX IF NOT EXISTS idx_rfid_tag_convocation_number ON rfid_tag(convocation_number);
CREATE UNIQUE INDEX IF NOT EXISTS idx_rfid_tag_live_epc ON rfid_tag(epc) WHERE status != 'void';
"""

# Columns a TagPatch may touch, in TagPatch field order
_PATCH_COLUMNS = (
    "status",
    "current_station",
    "last_scan_at",
    "last_scan_by",
    "last_scan_station",
    "scan_history",
    "box_contents",
)


def _dump_history(history: list[ScanRecord]) -> str:
    return json.dumps([s.model_dump(mode="json", by_alias=True, exclude_none=True) for s in history])


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def _row_to_tag(row: aiosqlite.Row) -> RfidTag:
    data = dict(row)
    box_contents = json.loads(data["box_contents"]) if data["box_contents"] else None
    return RfidTag(
        id=data["id"],
        epc=data["epc"],
        type=data["type"],
        convocation_number=data["convocation_number"],
        box_id=data["box_id"],
        box_label=data["box_label"],
        box_contents=box_contents,
        graduate_name=data["graduate_name"],
        tito_ticket_id=data["tito_ticket_id"],
        tito_ticket_slug=data["tito_ticket_slug"],
        status=data["status"],
        current_station=data["current_station"],
        encoded_at=data["encoded_at"],
        encoded_by=data["encoded_by"],
        last_scan_at=data["last_scan_at"],
        last_scan_by=data["last_scan_by"],
        last_scan_station=data["last_scan_station"],
        scan_history=json.loads(data["scan_history"]),
        version=data["version"],
    )


def _patch_values(patch: TagPatch) -> dict[str, Any]:
    """Convert set patch fields to column values."""
    values: dict[str, Any] = {}
    for column in _PATCH_COLUMNS:
        value = getattr(patch, column)
        if value is None:
            continue
        if column == "scan_history":
            values[column] = _dump_history(value)
        elif column == "box_contents":
            values[column] = json.dumps(value)
        elif column == "last_scan_at":
            values[column] = _iso(value)
        else:
            values[column] = _enum_value(value)
    return values


class SqliteTagStore:
    """Tag store backed by a local SQLite file."""

    def __init__(self, sqlite_path: str) -> None:
        self._path = sqlite_path
        self._db: Optional[aiosqlite.Connection] = None

    async def open(self) -> "SqliteTagStore":
        """Open the connection and create tables.

        Returns:
            The store itself, ready for use.
        """
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Initializing tag store at: {self._path}")

        self._db = await aiosqlite.connect(self._path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(SCHEMA_RFID_TAG)
        await self._db.commit()

        logger.info("Tag store initialized successfully")
        return self

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Tag store not initialized. Call open() first.")
        return self._db

    async def close(self) -> None:
        """Close database connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.info("Tag store connection closed")

    async def ping(self) -> bool:
        try:
            async with self._conn().execute("SELECT 1") as cursor:
                await cursor.fetchone()
            return True
        except (sqlite3.Error, RuntimeError):
            return False

    async def _fetch(self, query: str, params: tuple[Any, ...] = ()) -> list[RfidTag]:
        try:
            async with self._conn().execute(query, params) as cursor:
                rows = await cursor.fetchall()
        except sqlite3.OperationalError as e:
            raise BackendUnavailableError(f"Tag store error: {e}") from e
        return [_row_to_tag(row) for row in rows]

    # --- Lookups ---

    async def get_tag_by_epc(self, epc: str) -> Optional[RfidTag]:
        return pick_live(await self._fetch("SELECT * FROM rfid_tag WHERE epc = ?", (epc,)))

    async def get_tag_by_convocation_number(self, convocation_number: str) -> Optional[RfidTag]:
        return pick_live(
            await self._fetch(
                "SELECT * FROM rfid_tag WHERE convocation_number = ?",
                (convocation_number.upper().strip(),),
            )
        )

    async def get_tag_by_id(self, tag_id: str) -> Optional[RfidTag]:
        tags = await self._fetch("SELECT * FROM rfid_tag WHERE id = ?", (tag_id,))
        return tags[0] if tags else None

    async def fetch_all_tags(self) -> list[RfidTag]:
        return await self._fetch("SELECT * FROM rfid_tag ORDER BY created_at, rowid")

    async def get_tag_map(self) -> dict[str, RfidTag]:
        tags = await self.fetch_all_tags()
        logger.debug(f"Loaded {len(tags)} tag rows")
        return build_tag_map(tags)

    # --- Writes ---

    async def create_tag(self, tag: RfidTag) -> RfidTag:
        """Insert a new tag row.

        Args:
            tag: Complete tag without an ID.

        Returns:
            The stored tag with its assigned ID.

        Raises:
            DuplicateTagError: A live row already holds the EPC.
        """
        db = self._conn()
        existing = await self.get_tag_by_epc(tag.epc)
        if existing and not existing.is_void:
            raise DuplicateTagError(f"EPC {tag.epc} already exists in the system", existing)

        tag_id = f"rec{uuid.uuid4().hex[:14]}"
        try:
            await db.execute(
                """
                INSERT INTO rfid_tag (
                    id, epc, type, convocation_number, box_id, box_label, box_contents,
                    graduate_name, tito_ticket_id, tito_ticket_slug, status, current_station,
                    encoded_at, encoded_by, last_scan_at, last_scan_by, last_scan_station,
                    scan_history, version, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tag_id,
                    tag.epc,
                    tag.type.value,
                    tag.convocation_number,
                    tag.box_id,
                    tag.box_label,
                    json.dumps(tag.box_contents) if tag.box_contents is not None else None,
                    tag.graduate_name,
                    tag.tito_ticket_id,
                    tag.tito_ticket_slug,
                    tag.status.value,
                    tag.current_station.value,
                    tag.encoded_at.isoformat(),
                    tag.encoded_by,
                    _iso(tag.last_scan_at),
                    tag.last_scan_by,
                    _enum_value(tag.last_scan_station),
                    _dump_history(tag.scan_history),
                    0,
                    int(time.time()),
                ),
            )
            await db.commit()
        except sqlite3.IntegrityError as e:
            # Lost a race against another encode of the same EPC
            await db.rollback()
            raise DuplicateTagError(f"EPC {tag.epc} already exists in the system") from e

        return tag.model_copy(update={"id": tag_id, "version": 0})

    async def update_tag(
        self,
        tag_id: str,
        patch: TagPatch,
        expected_version: Optional[int] = None,
    ) -> RfidTag:
        """Apply a partial update as a single compare-and-swap statement.

        Args:
            tag_id: Row ID.
            patch: Fields to change.
            expected_version: Version read by the caller, or None to skip the check.

        Returns:
            The updated tag.
        """
        db = self._conn()
        values = _patch_values(patch)
        assignments = [f"{column} = ?" for column in values]
        assignments.append("version = version + 1")
        params: list[Any] = list(values.values())

        query = f"UPDATE rfid_tag SET {', '.join(assignments)} WHERE id = ?"
        params.append(tag_id)
        if expected_version is not None:
            query += " AND version = ?"
            params.append(expected_version)

        try:
            cursor = await db.execute(query, params)
            await db.commit()
        except sqlite3.IntegrityError as e:
            await db.rollback()
            raise DuplicateTagError(f"Update of {tag_id} conflicts with a live EPC") from e
        except sqlite3.OperationalError as e:
            raise BackendUnavailableError(f"Tag store error: {e}") from e

        if cursor.rowcount == 0:
            current = await self.get_tag_by_id(tag_id)
            if current is None:
                raise TagNotFoundError(f"Tag record {tag_id} not found")
            raise ConcurrentUpdateError(
                f"Tag {current.epc} changed (version {expected_version} -> {current.version})"
            )

        updated = await self.get_tag_by_id(tag_id)
        if updated is None:
            raise TagNotFoundError(f"Tag record {tag_id} not found")
        return updated
