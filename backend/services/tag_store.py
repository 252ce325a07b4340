"""Tag store contract shared by the record backends.

Backends persist whole tag records and know nothing about station rules.
Callers build the complete next ``scan_history`` themselves (there is no
append primitive) and pass the version they read so a concurrent writer is
detected instead of silently overwritten.
"""

from typing import Iterable, Optional, Protocol

from models import RfidTag, TagPatch


class TagStore(Protocol):
    """Persistence interface over tag records."""

    async def get_tag_by_epc(self, epc: str) -> Optional[RfidTag]:
        """Exact-match lookup on a normalized EPC. Live records win over void ones."""
        ...

    async def get_tag_by_convocation_number(self, convocation_number: str) -> Optional[RfidTag]:
        ...

    async def create_tag(self, tag: RfidTag) -> RfidTag:
        """Insert a record. Raises DuplicateTagError if a live record holds the EPC."""
        ...

    async def update_tag(
        self,
        tag_id: str,
        patch: TagPatch,
        expected_version: Optional[int] = None,
    ) -> RfidTag:
        """Apply a partial update and bump the version.

        Raises:
            TagNotFoundError: No record with this ID.
            ConcurrentUpdateError: ``expected_version`` no longer matches.
        """
        ...

    async def fetch_all_tags(self) -> list[RfidTag]:
        ...

    async def get_tag_map(self) -> dict[str, RfidTag]:
        """Full population keyed by EPC. The expensive call the cache shields."""
        ...

    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        ...


def pick_live(tags: Iterable[RfidTag]) -> Optional[RfidTag]:
    """Choose the record an EPC lookup should return.

    A non-void record wins; among equals the most recently encoded one does.
    """
    best: Optional[RfidTag] = None
    for tag in tags:
        if best is None:
            best = tag
            continue
        if best.is_void and not tag.is_void:
            best = tag
        elif best.is_void == tag.is_void and tag.encoded_at > best.encoded_at:
            best = tag
    return best


def build_tag_map(tags: Iterable[RfidTag]) -> dict[str, RfidTag]:
    """Key records by EPC, keeping the live record when an EPC was re-encoded."""
    tag_map: dict[str, RfidTag] = {}
    for tag in tags:
        if not tag.epc:
            continue
        existing = tag_map.get(tag.epc)
        tag_map[tag.epc] = tag if existing is None else pick_live([existing, tag])  # type: ignore[assignment]
    return tag_map
