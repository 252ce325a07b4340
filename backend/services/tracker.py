"""Service wiring for the convocation RFID tracker.

Builds the store, cache, enrichment clients, lifecycle engine and read-side
services once per process and hands them to the routers.
"""

import logging
from pathlib import Path
from typing import Optional

from config import TrackerConfig, get_app_dir, get_config
from database import SqliteTagStore
from services.airtable_store import AirtableTagStore
from services.cache import TagCache
from services.enrichment import GraduateDirectory, TitoClient
from services.lifecycle import TagLifecycleEngine
from services.lookup import TagLookup
from services.reconciliation import ReconciliationService
from services.station_reader import StationReader
from services.tag_store import TagStore
from services.websocket_manager import WebSocketManager, get_ws_manager

logger = logging.getLogger(__name__)


class Tracker:
    """Holds the wired services for one process."""

    def __init__(
        self,
        store: TagStore,
        config: TrackerConfig,
        ws_manager: Optional[WebSocketManager] = None,
        tito: Optional[TitoClient] = None,
        directory: Optional[GraduateDirectory] = None,
    ) -> None:
        self.store = store
        self.cache = TagCache(store.get_tag_map, ttl_seconds=config.cache.ttl_seconds)
        self.lookup = TagLookup(store, self.cache)
        self.tito = tito
        self.directory = directory
        self.engine = TagLifecycleEngine(
            store, self.cache, lookup=self.lookup, tito=tito, directory=directory
        )
        self.reconciliation = ReconciliationService(
            self.cache, recent_limit=config.lifecycle.recent_scans_limit
        )
        self.ws_manager = ws_manager or get_ws_manager()
        self.engine.add_listener(self.ws_manager.on_tag_event)
        self.reader = StationReader(self.engine, self.ws_manager)

    def apply_config(self, config: TrackerConfig) -> None:
        """Apply settings that can change without a restart."""
        self.cache.ttl_seconds = config.cache.ttl_seconds
        self.reconciliation.recent_limit = config.lifecycle.recent_scans_limit

    async def close(self) -> None:
        await self.store.close()
        if self.tito is not None:
            await self.tito.close()
        if self.directory is not None:
            await self.directory.close()


async def create_store(config: TrackerConfig) -> TagStore:
    """Open the configured tag store."""
    if config.storage.backend == "airtable":
        logger.info(f"Using Airtable tag store (base {config.airtable.base_id})")
        return AirtableTagStore(config.airtable)

    path = config.storage.sqlite_path
    if path != ":memory:" and not Path(path).is_absolute():
        path = str(get_app_dir() / path)
    return await SqliteTagStore(path).open()


# Global tracker instance
_tracker: Optional[Tracker] = None


async def init_tracker(config: Optional[TrackerConfig] = None) -> Tracker:
    """Build and register the process tracker."""
    global _tracker
    config = config or get_config()
    store = await create_store(config)
    _tracker = Tracker(
        store,
        config,
        tito=TitoClient(config.tito),
        directory=GraduateDirectory(config.airtable),
    )
    logger.info(f"Tracker initialized with {config.storage.backend} store")
    return _tracker


def set_tracker(tracker: Optional[Tracker]) -> None:
    global _tracker
    _tracker = tracker


def get_tracker() -> Tracker:
    """Get the process tracker (initialized in the app lifespan)."""
    if _tracker is None:
        raise RuntimeError("Tracker not initialized. Call init_tracker() first.")
    return _tracker


async def close_tracker() -> None:
    global _tracker
    if _tracker is not None:
        await _tracker.close()
        _tracker = None
        logger.info("Tracker closed")
