"""WebSocket Connection Manager for the convocation RFID tracker.

Manages WebSocket connections and broadcasts live tag events to station
dashboards.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from fastapi import WebSocket

from models import DashboardStats, RfidTag, Station

logger = logging.getLogger(__name__)


class WebSocketManager:
    """Manages WebSocket connections and event broadcasting."""

    def __init__(self) -> None:
        """Initialize WebSocket manager with empty connection list."""
        self._connections: list[WebSocket] = []
        self._status_task: asyncio.Task[None] | None = None

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        """Accept and track a new WebSocket connection.

        Args:
            websocket: The WebSocket connection to accept.
        """
        await websocket.accept()
        self._connections.append(websocket)
        logger.info(f"WebSocket connected. Total connections: {len(self._connections)}")

    def disconnect(self, websocket: WebSocket) -> None:
        """Remove a WebSocket connection from tracking.

        Args:
            websocket: The WebSocket connection to remove.
        """
        if websocket in self._connections:
            self._connections.remove(websocket)
            logger.info(f"WebSocket disconnected. Total connections: {len(self._connections)}")

    async def broadcast(self, message: dict[str, Any]) -> None:
        """Broadcast a message to all connected clients.

        Args:
            message: Dictionary to serialize and send as JSON.
        """
        if not self._connections:
            return

        # Serialize datetime objects
        def json_serializer(obj: Any) -> str:
            if isinstance(obj, datetime):
                return obj.isoformat()
            raise TypeError(f"Object of type {type(obj)} is not JSON serializable")

        text = json.dumps(message, default=json_serializer)
        disconnected: list[WebSocket] = []

        for connection in self._connections:
            try:
                await connection.send_text(text)
            except Exception as e:
                logger.warning(f"Failed to send to WebSocket: {e}")
                disconnected.append(connection)

        # Remove failed connections
        for conn in disconnected:
            self.disconnect(conn)

    async def broadcast_tag_scanned(self, tag: RfidTag) -> None:
        """Broadcast a TAG_SCANNED event.

        Args:
            tag: Tag as stored after the scan.
        """
        await self.broadcast({
            "type": "TAG_SCANNED",
            "epc": tag.epc,
            "tagType": tag.type.value,
            "convocationNumber": tag.convocation_number,
            "graduateName": tag.graduate_name,
            "station": tag.current_station.value,
            "status": tag.status.value,
            "scannedBy": tag.last_scan_by,
            "timestamp": tag.last_scan_at or datetime.now(timezone.utc),
        })

    async def broadcast_tag_voided(self, tag: RfidTag) -> None:
        """Broadcast a TAG_VOIDED event."""
        last = tag.scan_history[-1] if tag.scan_history else None
        await self.broadcast({
            "type": "TAG_VOIDED",
            "epc": tag.epc,
            "reason": last.notes if last else None,
            "voidedBy": tag.last_scan_by,
            "timestamp": tag.last_scan_at or datetime.now(timezone.utc),
        })

    async def broadcast_unknown_tag(self, epc: str, station: Station, reason: str) -> None:
        """Broadcast an UNKNOWN_TAG event for a reader hit that could not be applied.

        Args:
            epc: EPC as read.
            station: Station of the reader.
            reason: Why the read was rejected.
        """
        await self.broadcast({
            "type": "UNKNOWN_TAG",
            "epc": epc,
            "station": station.value,
            "reason": reason,
            "timestamp": datetime.now(timezone.utc),
        })

    async def on_tag_event(self, event: str, tag: RfidTag) -> None:
        """Lifecycle engine listener."""
        if event == "scanned":
            await self.broadcast_tag_scanned(tag)
        elif event == "voided":
            await self.broadcast_tag_voided(tag)

    async def _status_update_loop(
        self,
        mqtt_connected_fn: Callable[[], bool],
        stats_fn: Callable[[], Awaitable[DashboardStats]],
        interval: float,
    ) -> None:
        """Periodically broadcast status updates.

        Args:
            mqtt_connected_fn: Callable that returns MQTT connection status.
            stats_fn: Coroutine function returning current dashboard stats.
            interval: Seconds between updates.
        """
        while True:
            try:
                await asyncio.sleep(interval)
                if self._connections:
                    stats = await stats_fn()
                    await self.broadcast({
                        "type": "STATUS_UPDATE",
                        "mqttConnected": mqtt_connected_fn(),
                        "totalTags": stats.total_tags,
                        "scanned": stats.scanned,
                        "dispatched": stats.dispatched,
                        "delivered": stats.delivered,
                        "returned": stats.returned,
                        "void": stats.void,
                    })
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in status update loop: {e}")
                await asyncio.sleep(interval)

    def start_status_updates(
        self,
        mqtt_connected_fn: Callable[[], bool],
        stats_fn: Callable[[], Awaitable[DashboardStats]],
        interval: float = 5.0,
    ) -> None:
        """Start periodic status update broadcasts."""
        if self._status_task is None or self._status_task.done():
            self._status_task = asyncio.create_task(
                self._status_update_loop(mqtt_connected_fn, stats_fn, interval)
            )

    async def stop_status_updates(self) -> None:
        """Stop periodic status update broadcasts."""
        if self._status_task and not self._status_task.done():
            self._status_task.cancel()
            try:
                await self._status_task
            except asyncio.CancelledError:
                pass
        self._status_task = None


# Global WebSocket manager instance
_ws_manager: Optional[WebSocketManager] = None


def get_ws_manager() -> WebSocketManager:
    """Get WebSocket manager instance (singleton)."""
    global _ws_manager
    if _ws_manager is None:
        _ws_manager = WebSocketManager()
    return _ws_manager
