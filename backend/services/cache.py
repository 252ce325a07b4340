"""Tag population cache.

Holds one snapshot of the full tag map plus the time it was fetched. Reads
inside the freshness window return the snapshot; a read after the window, or
after ``clear()``, refetches. When a refetch fails and a snapshot exists, the
stale snapshot is served instead of the error.

Concurrent misses are not coalesced: each may refetch, and the last one to
finish replaces the snapshot.
"""

import logging
import time
from typing import Awaitable, Callable, Optional

from errors import TrackerError
from models import RfidTag

logger = logging.getLogger(__name__)

TagMapLoader = Callable[[], Awaitable[dict[str, RfidTag]]]


class TagCache:
    """Time-bounded snapshot of the tag population."""

    def __init__(
        self,
        loader: TagMapLoader,
        ttl_seconds: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._snapshot: Optional[dict[str, RfidTag]] = None
        self._fetched_at: float = 0.0
        self._valid = False

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    @ttl_seconds.setter
    def ttl_seconds(self, value: float) -> None:
        self._ttl_seconds = value

    def _is_fresh(self) -> bool:
        return (
            self._valid
            and self._snapshot is not None
            and self._clock() - self._fetched_at < self._ttl_seconds
        )

    async def get(self) -> dict[str, RfidTag]:
        """Return the tag map, refetching when the snapshot is missing or expired.

        Raises:
            TrackerError: The refetch failed and no snapshot exists yet.
        """
        if self._is_fresh():
            return self._snapshot  # type: ignore[return-value]

        try:
            snapshot = await self._loader()
        except TrackerError as e:
            if self._snapshot is None:
                raise
            logger.warning(f"Tag map refresh failed, serving stale snapshot: {e}")
            return self._snapshot

        self._snapshot = snapshot
        self._fetched_at = self._clock()
        self._valid = True
        logger.debug(f"Tag cache refreshed with {len(snapshot)} tags")
        return snapshot

    def clear(self) -> None:
        """Force the next read to refetch.

        The old snapshot is kept as the stale fallback for that refetch.
        """
        self._valid = False
        logger.debug("Tag cache cleared")

    def age_seconds(self) -> Optional[float]:
        """Seconds since the last successful fetch, None before the first one."""
        if self._snapshot is None:
            return None
        return self._clock() - self._fetched_at
