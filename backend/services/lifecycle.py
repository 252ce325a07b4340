"""Tag Lifecycle Engine for the convocation RFID tracker.

Applies station transitions to tag records.

Data Flow:
1. A station app, handheld bridge or fixed reader submits an EPC and station
2. The EPC is resolved through the fallback chain, straight from the store
3. The next record state is computed from the stored record
4. The write is a compare-and-swap on the record version, retried on conflict
5. The population cache is cleared and listeners are notified
6. Graduate tags at stations with a check-in list are checked in (best effort)

Writers to the same EPC inside this process are serialised by a keyed lock;
the version check catches writers in other processes.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Union

import httpx

from config import LifecycleConfig, get_config
from errors import (
    ConcurrentUpdateError,
    DuplicateTagError,
    TagNotFoundError,
    TagValidationError,
    TrackerError,
)
from models import (
    BoxContents,
    BulkScanItem,
    BulkScanResult,
    BulkScanSummary,
    DispatchMethod,
    RfidTag,
    ScanOutcome,
    ScanRecord,
    Station,
    TagPatch,
    TagStatus,
    TagType,
    TitoCheckinResult,
)
from services.cache import TagCache
from services.enrichment import GraduateDirectory, TitoClient
from services.epc import (
    box_id_from_epc,
    canonical_epc,
    convocation_from_epc,
    is_box_epc,
    normalize_epc,
)
from services.lookup import TagLookup
from services.stations import next_status, parse_station
from services.tag_store import TagStore

logger = logging.getLogger(__name__)

# Callback(event, tag) where event is "scanned" or "voided"
TagListener = Callable[[str, RfidTag], Awaitable[None]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _require_station(value: Union[Station, str]) -> Station:
    station = parse_station(value) if isinstance(value, str) else value
    if station is None:
        raise TagValidationError(f"Invalid station: {value}")
    return station


class KeyedLock:
    """One asyncio lock per key, created on demand."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def __call__(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)

    def prune(self) -> int:
        """Drop locks nobody holds.

        Returns:
            Number of locks removed.
        """
        idle = [k for k, lock in self._locks.items() if not lock.locked()]
        for key in idle:
            del self._locks[key]
        return len(idle)


class TagLifecycleEngine:
    """Encodes tags and moves them through the station pipeline."""

    def __init__(
        self,
        store: TagStore,
        cache: TagCache,
        lookup: Optional[TagLookup] = None,
        tito: Optional[TitoClient] = None,
        directory: Optional[GraduateDirectory] = None,
        lifecycle: Optional[LifecycleConfig] = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self.lookup = lookup or TagLookup(store, cache)
        self._tito = tito
        self._directory = directory
        self._lifecycle = lifecycle
        self.locks = KeyedLock()
        self._listeners: list[TagListener] = []

    @property
    def config(self) -> LifecycleConfig:
        # Re-read on each call so config reloads apply
        return self._lifecycle or get_config().lifecycle

    def add_listener(self, listener: TagListener) -> None:
        self._listeners.append(listener)

    async def _notify(self, event: str, tag: RfidTag) -> None:
        for listener in self._listeners:
            try:
                await listener(event, tag)
            except Exception as e:
                logger.error(f"Tag listener failed on {event} for {tag.epc}: {e}", exc_info=True)

    # --- Core mutation ---

    async def _mutate(
        self,
        raw_epc: str,
        build_patch: Callable[[RfidTag], TagPatch],
        allow_void: bool = False,
    ) -> RfidTag:
        """Read-modify-write one record under its lock with version checks.

        Args:
            raw_epc: Scanned identifier, resolved through the fallback chain.
            build_patch: Computes the patch from the freshly read record.
            allow_void: Let void records through (for voiding).

        Returns:
            The updated record.

        Raises:
            TagNotFoundError: No record, or the record is void and allow_void is False.
            ConcurrentUpdateError: Every attempt lost the version race.
        """
        epc = normalize_epc(raw_epc)
        tag, _ = await self.lookup.resolve(epc, fresh=True)
        if tag is None:
            raise TagNotFoundError(f"Tag {epc} not found. Encode it first.")

        attempts = self.config.max_update_retries + 1
        async with self.locks(tag.epc):
            for attempt in range(1, attempts + 1):
                current = await self._store.get_tag_by_epc(tag.epc)
                if current is None or current.id is None:
                    raise TagNotFoundError(f"Tag {epc} not found. Encode it first.")
                if current.is_void and not allow_void:
                    raise TagNotFoundError(f"Tag {current.epc} has been voided")

                patch = build_patch(current)
                try:
                    updated = await self._store.update_tag(
                        current.id, patch, expected_version=current.version
                    )
                except ConcurrentUpdateError:
                    if attempt == attempts:
                        raise
                    logger.warning(f"Version conflict on {current.epc}, retrying ({attempt}/{attempts - 1})")
                    continue

                self._cache.clear()
                return updated

        raise ConcurrentUpdateError(f"Tag {epc} could not be updated")

    # --- Encode ---

    async def _enrich(self, convocation_number: str) -> tuple[Optional[str], Optional[int], Optional[str]]:
        """Look up graduate name and ticket. Failures leave fields unset.

        The directory name wins; the ticket name is only a fallback.
        """
        name: Optional[str] = None
        ticket_id: Optional[int] = None
        ticket_slug: Optional[str] = None

        if self._directory is not None:
            try:
                graduate = await self._directory.find_by_convocation_number(convocation_number)
                if graduate is not None:
                    name = graduate.name
            except (TrackerError, httpx.HTTPError) as e:
                logger.warning(f"Graduate lookup failed for {convocation_number}: {e}")

        if self._tito is not None and self._tito.configured:
            try:
                ticket = await self._tito.find_ticket_by_convocation_number(convocation_number)
                if ticket is not None:
                    ticket_id = ticket.id
                    ticket_slug = ticket.slug
                    name = name or ticket.name
            except (TrackerError, httpx.HTTPError) as e:
                logger.warning(f"Ticket lookup failed for {convocation_number}: {e}")

        return name, ticket_id, ticket_slug

    async def encode(
        self,
        epc: str,
        tag_type: TagType,
        encoded_by: str,
        convocation_number: Optional[str] = None,
        box_id: Optional[str] = None,
        box_label: Optional[str] = None,
    ) -> RfidTag:
        """Register a freshly written tag.

        Args:
            epc: EPC as read; WD01 reads are converted to the UHF EPC.
            tag_type: Graduate or box.
            encoded_by: Operator at the encoding station.
            convocation_number: Required for graduate tags unless the EPC is one.
            box_id: Required for box tags unless the EPC is ``BOX-<id>``.
            box_label: Printed box label, defaults to ``Box <id>``.

        Returns:
            The stored tag.

        Raises:
            TagValidationError: Missing or malformed input.
            DuplicateTagError: The EPC is already registered.
        """
        normalized = normalize_epc(epc)
        canonical = canonical_epc(normalized)
        if canonical != normalized:
            logger.info(f"Converted WD01 read {normalized} to EPC {canonical}")

        if not encoded_by or not encoded_by.strip():
            raise TagValidationError("encodedBy is required")
        if len(canonical) < self.config.min_epc_length:
            raise TagValidationError(
                f"Invalid EPC: must be at least {self.config.min_epc_length} characters"
            )

        conv_number: Optional[str] = None
        if tag_type == TagType.GRADUATE:
            conv_number = normalize_epc(convocation_number or "") or convocation_from_epc(canonical)
            if not conv_number:
                raise TagValidationError("Convocation number is required for graduate tags")
        else:
            box_id = (box_id or "").strip() or box_id_from_epc(canonical)
            if not box_id:
                raise TagValidationError("Box ID or a BOX- EPC is required for box tags")

        async with self.locks(canonical):
            existing = await self._store.get_tag_by_epc(canonical)
            if existing is not None:
                if not existing.is_void:
                    raise DuplicateTagError(f"EPC {canonical} is already registered", existing)
                if not self.config.allow_reencode_void:
                    raise DuplicateTagError(f"EPC {canonical} belongs to a voided tag", existing)
                logger.info(f"Re-encoding voided EPC {canonical}")

            graduate_name = ticket_id = ticket_slug = None
            if conv_number:
                graduate_name, ticket_id, ticket_slug = await self._enrich(conv_number)

            now = _now()
            operator = encoded_by.strip()
            tag = RfidTag(
                epc=canonical,
                type=tag_type,
                convocation_number=conv_number,
                box_id=box_id if tag_type == TagType.BOX else None,
                box_label=(box_label or f"Box {box_id or '?'}") if tag_type == TagType.BOX else None,
                box_contents=[] if tag_type == TagType.BOX else None,
                graduate_name=graduate_name,
                tito_ticket_id=ticket_id,
                tito_ticket_slug=ticket_slug,
                status=TagStatus.ENCODED,
                current_station=Station.ENCODING,
                encoded_at=now,
                encoded_by=operator,
                last_scan_at=now,
                last_scan_by=operator,
                last_scan_station=Station.ENCODING,
                scan_history=[
                    ScanRecord(
                        station=Station.ENCODING,
                        timestamp=now,
                        scanned_by=operator,
                        action=f"Encoded as {tag_type.value} tag",
                    )
                ],
            )
            created = await self._store.create_tag(tag)

        self._cache.clear()
        logger.info(
            f"Encoded {tag_type.value} tag {canonical} "
            f"(convocation: {conv_number or '-'}, name: {graduate_name or 'Unknown'}, "
            f"ticket: {ticket_id or 'None'})"
        )
        return created

    # --- Scans ---

    async def process_scan(
        self,
        epc: str,
        station: Station,
        scanned_by: str,
        action: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ScanOutcome:
        """Record a tag at a station.

        Raises:
            TagValidationError: Missing actor or unknown station.
            TagNotFoundError: Unknown or void tag.
        """
        if not scanned_by or not scanned_by.strip():
            raise TagValidationError("scannedBy is required")
        station = _require_station(station)
        operator = scanned_by.strip()

        def build_patch(current: RfidTag) -> TagPatch:
            record = ScanRecord(
                station=station,
                timestamp=_now(),
                scanned_by=operator,
                action=action or f"Scanned at {station.value}",
                notes=notes or None,
            )
            return TagPatch(
                status=next_status(current.status, station),
                current_station=station,
                last_scan_at=record.timestamp,
                last_scan_by=operator,
                last_scan_station=station,
                scan_history=[*current.scan_history, record],
            )

        updated = await self._mutate(epc, build_patch)
        logger.debug(f"Scanned {updated.epc} at {station.value} by {operator} -> {updated.status.value}")

        checkin: Optional[TitoCheckinResult] = None
        if updated.type == TagType.GRADUATE and updated.tito_ticket_id and self._tito is not None:
            checkin = await self._tito.checkin_at_station(updated.tito_ticket_id, station)
            if checkin is not None and not checkin.success:
                logger.info(f"Ticket check-in note for {updated.epc}: {checkin.error}")

        await self._notify("scanned", updated)
        return ScanOutcome(tag=updated, tito_checkin=checkin)

    async def _run_batch(
        self,
        epcs: list[str],
        station: Station,
        scanned_by: str,
        action: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> BulkScanResult:
        results: list[BulkScanItem] = []
        for raw in epcs:
            epc = normalize_epc(raw)
            try:
                outcome = await self.process_scan(epc, station, scanned_by, action, notes)
            except TrackerError as e:
                results.append(BulkScanItem(epc=epc, success=False, error=str(e)))
                continue
            results.append(
                BulkScanItem(epc=epc, success=True, tag=outcome.tag, tito_checkin=outcome.tito_checkin)
            )

        successful = sum(1 for r in results if r.success)
        checkins = sum(1 for r in results if r.tito_checkin is not None and r.tito_checkin.success)
        summary = BulkScanSummary(
            total=len(results),
            successful=successful,
            failed=len(results) - successful,
            tito_checkins=checkins,
        )
        logger.info(
            f"Batch at {Station(station).value}: {summary.successful}/{summary.total} ok, "
            f"{summary.failed} failed, {summary.tito_checkins} check-ins"
        )
        return BulkScanResult(results=results, summary=summary)

    async def process_bulk_scan(
        self,
        epcs: list[str],
        station: Station,
        scanned_by: str,
        action: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> BulkScanResult:
        """Scan many tags at one station, one at a time.

        A failing EPC is reported in its result and does not stop the batch.

        Raises:
            TagValidationError: Empty batch, batch over the limit, unknown station or missing actor.
        """
        station = _require_station(station)
        if not epcs:
            raise TagValidationError("epcs array is required")
        limit = self.config.bulk_scan_limit
        if len(epcs) > limit:
            raise TagValidationError(f"Maximum {limit} EPCs per bulk scan")
        if not scanned_by or not scanned_by.strip():
            raise TagValidationError("scannedBy is required")
        return await self._run_batch(epcs, station, scanned_by, action, notes)

    # --- Boxes ---

    async def expand_box_epcs(self, epcs: list[str]) -> list[str]:
        """Expand box tags into the box plus its resolvable members.

        Order is preserved and every EPC appears once. A box that cannot be
        found is kept as-is so it fails in the batch like any unknown tag.
        """
        expanded: dict[str, None] = {}
        for raw in epcs:
            epc = normalize_epc(raw)
            if not epc:
                continue
            tag, _ = await self.lookup.resolve(epc)
            is_box = is_box_epc(epc) or (tag is not None and tag.type == TagType.BOX)
            if tag is not None and is_box:
                expanded.setdefault(tag.epc, None)
                items = await self.lookup.resolve_box_items(tag)
                for item in items:
                    expanded.setdefault(item.epc, None)
                logger.info(f"Expanded box {tag.epc}: {len(items)} items")
            else:
                expanded.setdefault(tag.epc if tag is not None else epc, None)
        return list(expanded)

    async def add_items_to_box(self, box_epc: str, item_epcs: list[str]) -> RfidTag:
        """Merge members into a box's contents.

        Boxes hold items only; a box can never contain a box.

        Raises:
            TagValidationError: No items, a box among the items, or the target is not a box.
            TagNotFoundError: Unknown or void box.
        """
        items = [canonical_epc(e) for e in item_epcs if normalize_epc(e)]
        if not items:
            raise TagValidationError("itemEpcs array is required")

        box_tag, _ = await self.lookup.resolve(box_epc, fresh=True)
        box_key = box_tag.epc if box_tag else normalize_epc(box_epc)

        resolved: list[str] = []
        for item in items:
            if item == box_key or is_box_epc(item):
                raise TagValidationError(f"{item} is a box and cannot be placed inside {box_key}")
            item_tag, _ = await self.lookup.resolve(item)
            if item_tag is None:
                resolved.append(item)
                continue
            if item_tag.type == TagType.BOX or item_tag.epc == box_key:
                raise TagValidationError(f"{item} is a box and cannot be placed inside {box_key}")
            resolved.append(item_tag.epc)

        def build_patch(current: RfidTag) -> TagPatch:
            if current.type != TagType.BOX:
                raise TagValidationError(f"{current.epc} is not a box tag")
            merged = list(dict.fromkeys([*(current.box_contents or []), *resolved]))
            return TagPatch(box_contents=merged)

        updated = await self._mutate(box_epc, build_patch)
        logger.info(f"Box {updated.epc} now holds {len(updated.box_contents or [])} items")
        return updated

    async def get_box_contents(self, box_epc: str) -> BoxContents:
        """Resolve a box and its members; stale member EPCs are dropped.

        Raises:
            TagNotFoundError: Unknown box.
            TagValidationError: The tag is not a box.
        """
        box, _ = await self.lookup.resolve(box_epc)
        if box is None:
            raise TagNotFoundError(f"Box tag {normalize_epc(box_epc)} not found")
        if box.type != TagType.BOX:
            raise TagValidationError(f"{box.epc} is not a box tag")
        return BoxContents(box=box, items=await self.lookup.resolve_box_items(box))

    # --- Dispatch & handover ---

    async def process_dispatch(
        self,
        epcs: list[str],
        dispatched_by: str,
        tracking_number: Optional[str] = None,
        dispatch_method: Optional[DispatchMethod] = None,
        notes: Optional[str] = None,
    ) -> BulkScanResult:
        """Final dispatch; boxes dispatch everything inside them."""
        if not epcs:
            raise TagValidationError("epcs array is required")
        if not dispatched_by or not dispatched_by.strip():
            raise TagValidationError("dispatchedBy is required")

        expanded = await self.expand_box_epcs(epcs)
        logger.info(f"Dispatching {len(expanded)} tags (from {len(epcs)} input EPCs) by {dispatched_by}")

        method = DispatchMethod(dispatch_method).value if dispatch_method else "Unknown"
        parts = [f"Tracking: {tracking_number}" if tracking_number else "", notes or ""]
        return await self._run_batch(
            expanded,
            Station.FINAL_DISPATCH,
            dispatched_by,
            action=f"Dispatched via {method}",
            notes=" | ".join(p for p in parts if p) or None,
        )

    async def process_handover(
        self,
        epcs: list[str],
        handover_by: str,
        handover_to: str,
        notes: Optional[str] = None,
    ) -> BulkScanResult:
        """Hand tags over to a recipient; boxes hand over everything inside them."""
        if not epcs:
            raise TagValidationError("epcs array is required")
        if not handover_by or not handover_by.strip():
            raise TagValidationError("handoverBy is required")
        if not handover_to or not handover_to.strip():
            raise TagValidationError("handoverTo is required")

        expanded = await self.expand_box_epcs(epcs)
        logger.info(f"Handing over {len(expanded)} tags to {handover_to} by {handover_by}")

        return await self._run_batch(
            expanded,
            Station.HANDOVER,
            handover_by,
            action=f"Handed over to {handover_to.strip()}",
            notes=notes,
        )

    # --- Void ---

    async def void_tag(self, epc: str, reason: str, voided_by: str) -> RfidTag:
        """Void a tag. There is no way back.

        The void entry is recorded at the tag's current station.

        Raises:
            TagValidationError: Missing reason or actor.
            TagNotFoundError: Unknown tag.
        """
        if not reason or not reason.strip():
            raise TagValidationError("reason is required")
        if not voided_by or not voided_by.strip():
            raise TagValidationError("voidedBy is required")
        operator = voided_by.strip()

        def build_patch(current: RfidTag) -> TagPatch:
            record = ScanRecord(
                station=current.current_station,
                timestamp=_now(),
                scanned_by=operator,
                action="Voided",
                notes=reason.strip(),
            )
            return TagPatch(
                status=TagStatus.VOID,
                last_scan_at=record.timestamp,
                last_scan_by=operator,
                last_scan_station=current.current_station,
                scan_history=[*current.scan_history, record],
            )

        updated = await self._mutate(epc, build_patch, allow_void=True)
        logger.info(f"Voided tag {updated.epc} by {operator}: {reason.strip()}")
        await self._notify("voided", updated)
        return updated
