"""Shared fixtures: a real SQLite tag store on a temporary file."""

from typing import AsyncGenerator

import pytest
import pytest_asyncio

from config import LifecycleConfig
from database import SqliteTagStore
from services.cache import TagCache
from services.lifecycle import TagLifecycleEngine


@pytest_asyncio.fixture
async def store(tmp_path) -> AsyncGenerator[SqliteTagStore, None]:
    """Open a fresh tag store."""
    tag_store = await SqliteTagStore(str(tmp_path / "tracker.db")).open()
    yield tag_store
    await tag_store.close()


@pytest.fixture
def lifecycle_config() -> LifecycleConfig:
    return LifecycleConfig()


@pytest.fixture
def cache(store: SqliteTagStore) -> TagCache:
    return TagCache(store.get_tag_map, ttl_seconds=120)


@pytest.fixture
def engine(store: SqliteTagStore, cache: TagCache, lifecycle_config: LifecycleConfig) -> TagLifecycleEngine:
    return TagLifecycleEngine(store, cache, lifecycle=lifecycle_config)
