"""Tag lookup with the EPC fallback chain.

Reads go through the population cache first and fall back to the store for
tags encoded since the snapshot was taken. Mutations pass ``fresh=True`` so
they always start from the stored record and its current version.
"""

import logging
from typing import Optional

from errors import TrackerError
from models import (
    BatchVerifyItem,
    BatchVerifyResult,
    BatchVerifySummary,
    EncodedCheck,
    RfidTag,
    TagType,
    VerifyResult,
)
from services.cache import TagCache
from services.epc import candidate_epcs, normalize_epc
from services.tag_store import TagStore

logger = logging.getLogger(__name__)


class TagLookup:
    """Resolves scanned strings to tag records."""

    def __init__(self, store: TagStore, cache: TagCache) -> None:
        self._store = store
        self._cache = cache

    async def resolve(self, raw: str, fresh: bool = False) -> tuple[Optional[RfidTag], Optional[str]]:
        """Resolve a scanned string through the fallback chain.

        Args:
            raw: Scanned or typed identifier.
            fresh: Skip the cache and read the store directly.

        Returns:
            Tuple of (tag or None, candidate EPC that matched or None).
        """
        candidates = candidate_epcs(raw)

        if not fresh:
            tag_map = await self._cache.get()
            for candidate in candidates:
                tag = tag_map.get(candidate)
                if tag is not None:
                    return tag, candidate

        for candidate in candidates:
            tag = await self._store.get_tag_by_epc(candidate)
            if tag is not None:
                return tag, candidate

        return None, None

    async def get_by_convocation_number(self, convocation_number: str) -> Optional[RfidTag]:
        return await self._store.get_tag_by_convocation_number(convocation_number)

    async def resolve_box_items(self, box: RfidTag) -> list[RfidTag]:
        """Resolve a box's member EPCs, dropping any that no longer resolve."""
        if not box.box_contents:
            return []

        tag_map = await self._cache.get()
        items: list[RfidTag] = []
        for epc in box.box_contents:
            tag = tag_map.get(epc) or await self._store.get_tag_by_epc(epc)
            if tag is None:
                logger.debug(f"Box {box.epc} references unknown EPC {epc}")
                continue
            items.append(tag)
        return items

    async def verify(self, raw: str) -> VerifyResult:
        """Look up one read for a verification screen.

        Tries the EPC fallback chain, then the read as a convocation number.
        Box tags also return their resolved items.
        """
        epc = normalize_epc(raw)
        tag, matched = await self.resolve(epc)

        if tag is None:
            tag = await self.get_by_convocation_number(epc)
            matched = tag.epc if tag else None

        if tag is None:
            return VerifyResult(found=False, message=f"Tag {epc} is not registered in the system")

        box_items = None
        if tag.type == TagType.BOX and tag.box_contents:
            box_items = await self.resolve_box_items(tag)

        return VerifyResult(found=True, tag=tag, matched_epc=matched, box_items=box_items)

    async def verify_many(self, epcs: list[str]) -> BatchVerifyResult:
        """Verify a batch of reads; lookup failures are reported per EPC."""
        results: list[BatchVerifyItem] = []
        for raw in epcs:
            epc = normalize_epc(raw)
            try:
                tag, _ = await self.resolve(epc)
            except TrackerError as e:
                results.append(BatchVerifyItem(epc=epc, found=False, error=str(e)))
                continue
            results.append(BatchVerifyItem(epc=epc, found=tag is not None, tag=tag))

        found = sum(1 for r in results if r.found)
        return BatchVerifyResult(
            results=results,
            summary=BatchVerifySummary(total=len(results), found=found, not_found=len(results) - found),
        )

    async def is_encoded(self, raw: str) -> EncodedCheck:
        tag, _ = await self.resolve(raw)
        return EncodedCheck(encoded=tag is not None, tag=tag)
