"""Fixed station reader ingest.

Fixed UHF readers at stations publish every tag they see. A tag sitting in
the read field is reported many times per second, so reads are debounced per
(station, EPC) before being applied as a single scan at that station.

Data Flow:
1. Reader publishes on ``stations/<station>/stream/tag``
2. MQTT client extracts the station and the EPCs from the message
3. StationReader drops repeats inside the debounce window
4. The read is applied by the lifecycle engine as a scan
5. Reads that cannot be applied are broadcast as UNKNOWN_TAG
"""

import logging
import time
from typing import Any, Optional

from config import get_config
from errors import TagNotFoundError, TrackerError
from models import ScanOutcome, Station
from services.epc import normalize_epc
from services.lifecycle import TagLifecycleEngine
from services.stations import parse_station
from services.websocket_manager import WebSocketManager

logger = logging.getLogger(__name__)


def station_from_topic(topic: str) -> Optional[Station]:
    """Extract the station from ``stations/<station>/stream/tag``.

    Returns:
        The station, or None for topics outside that shape or unknown stations.
    """
    parts = topic.split("/")
    if len(parts) < 2 or parts[0] != "stations":
        return None
    return parse_station(parts[1])


def extract_reads(payload: Any) -> list[dict[str, Any]]:
    """Normalise the payload shapes readers publish into a list of reads.

    Accepted shapes: a list of reads, ``{"data": [...]}``, ``{"tags": [...]}``,
    ``{"data": {...}}`` and a bare single read. A read carries ``idHex`` or
    ``tag_id`` plus optional ``peakRssi``/``rssi`` and ``antenna``.
    """
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        body = payload.get("data", payload.get("tags", payload))
        items = body if isinstance(body, list) else [body]
    else:
        return []

    reads: list[dict[str, Any]] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        epc = item.get("idHex") or item.get("tag_id") or item.get("epc")
        if not epc:
            continue
        reads.append({
            "epc": str(epc),
            "rssi": item.get("peakRssi") or item.get("rssi"),
            "antenna": item.get("antenna"),
        })
    return reads


class StationReader:
    """Applies debounced reader hits as station scans."""

    def __init__(self, engine: TagLifecycleEngine, ws_manager: Optional[WebSocketManager] = None) -> None:
        self._engine = engine
        self._ws_manager = ws_manager
        # (station, epc) -> last seen, in milliseconds
        self._last_seen: dict[tuple[Station, str], float] = {}
        self._last_read: float = 0

    @property
    def last_read_seconds(self) -> Optional[int]:
        """Seconds since the last reader hit."""
        if self._last_read == 0:
            return None
        return int(time.time() - self._last_read)

    def _should_debounce(self, station: Station, epc: str) -> bool:
        """Check if a read repeats one inside the debounce window.

        Args:
            station: Station of the reader.
            epc: Normalized EPC.

        Returns:
            True if the read should be ignored.
        """
        debounce_ms = get_config().reader.debounce_ms
        now = time.time() * 1000

        key = (station, epc)
        if now - self._last_seen.get(key, 0) < debounce_ms:
            return True

        self._last_seen[key] = now
        return False

    async def handle_read(
        self,
        station: Station,
        epc: str,
        reader_id: Optional[str] = None,
        rssi: Optional[float] = None,
        antenna: Optional[int] = None,
    ) -> Optional[ScanOutcome]:
        """Apply one reader hit.

        Args:
            station: Station the reader is mounted at.
            epc: EPC as read.
            reader_id: Reader identifier, recorded as the actor.
            rssi: Peak signal strength, recorded in the scan notes.
            antenna: Antenna port, recorded in the scan notes.

        Returns:
            The scan outcome, or None when debounced or rejected.
        """
        self._last_read = time.time()
        normalized = normalize_epc(epc)
        if not normalized or self._should_debounce(station, normalized):
            return None

        config = get_config()
        actor = f"{config.reader.scanned_by_prefix}:{reader_id or station.value}"
        details = [f"antenna {antenna}" if antenna is not None else "", f"RSSI {rssi}" if rssi is not None else ""]
        try:
            outcome = await self._engine.process_scan(
                normalized,
                station,
                actor,
                action=f"Read by fixed reader at {station.value}",
                notes=", ".join(d for d in details if d) or None,
            )
        except TagNotFoundError as e:
            logger.warning(f"Reader at {station.value} saw unusable tag {normalized}: {e}")
            if self._ws_manager is not None:
                await self._ws_manager.broadcast_unknown_tag(normalized, station, str(e))
            return None
        except TrackerError as e:
            logger.error(f"Reader scan of {normalized} at {station.value} failed: {e}")
            return None

        logger.info(f"Reader scan: {outcome.tag.epc} at {station.value} -> {outcome.tag.status.value}")
        return outcome

    async def handle_message(self, topic: str, payload: Any) -> int:
        """Apply every read in one reader message.

        Returns:
            Number of reads applied as scans.
        """
        station = station_from_topic(topic)
        if station is None:
            logger.warning(f"Ignoring tag stream on unknown station topic: {topic}")
            return 0

        reader_id = payload.get("clientId") if isinstance(payload, dict) else None
        applied = 0
        for read in extract_reads(payload):
            if await self.handle_read(station, read["epc"], reader_id, read["rssi"], read["antenna"]) is not None:
                applied += 1
        return applied

    def cleanup_old_entries(self, max_age_seconds: int = 3600) -> int:
        """Clean up old entries from the debounce table.

        Args:
            max_age_seconds: Maximum age of entries to keep.

        Returns:
            Number of entries removed.
        """
        now = time.time() * 1000
        max_age_ms = max_age_seconds * 1000

        old = [k for k, v in self._last_seen.items() if now - v > max_age_ms]
        for key in old:
            del self._last_seen[key]

        if old:
            logger.debug(f"Cleaned up {len(old)} old reader debounce entries")
        return len(old)
