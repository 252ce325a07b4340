"""EPC normalisation for the convocation RFID tracker.

Two reader families feed the tracker:

- Handheld/fixed UHF readers report the 96-bit EPC bank as 24 hex chars.
- The WD01 desktop encoder only exposes the TID bank. It reports 32 hex chars
  in reversed byte order, ending with the PC word ``3000`` (``0030`` once
  reversed), with the EPC in the 12 bytes after the PC word.

Graduate tags written by hand carry the convocation number itself
(e.g. ``120AEC1001``) and box tags carry ``BOX-<id>``.

Every scanned string is reduced to one canonical, uppercase identifier before
it touches the store; ``candidate_epcs`` lists the identifiers to try, in order,
when a read does not match exactly.
"""

import re
from functools import lru_cache
from typing import Optional

from models import TagType

EPC_GRADUATE_PATTERN = re.compile(r"^\d+(?:AEC|WEC)\d+$", re.IGNORECASE)
EPC_PREFIX_BOX = "BOX-"

UHF_EPC_LENGTH = 24
WD01_LENGTH = 32
WD01_SUFFIX = "0030"

# Leading bytes of the reversed TID that hold the PC word
_WD01_PC_BYTES = 2
_UHF_EPC_BYTES = UHF_EPC_LENGTH // 2

_HEX_RE = re.compile(r"^[0-9A-Fa-f]+$")


def normalize_epc(epc: str) -> str:
    """Normalize EPC to its canonical form.

    Args:
        epc: Raw EPC string as read or typed.

    Returns:
        Stripped, uppercase EPC.
    """
    return epc.upper().strip() if epc else ""


def is_hex(value: str) -> bool:
    """Check if string consists of hex characters only."""
    return bool(value) and bool(_HEX_RE.match(value))


def _byte_pairs(hex_str: str) -> list[str]:
    return [hex_str[i:i + 2] for i in range(0, len(hex_str), 2)]


def is_wd01_format(value: str) -> bool:
    """Check if a read came from the WD01 desktop encoder.

    Args:
        value: Raw read.

    Returns:
        True for exactly 32 hex chars ending in ``0030`` (case-insensitive).
    """
    if not value or len(value) != WD01_LENGTH:
        return False
    return is_hex(value) and value.upper().endswith(WD01_SUFFIX)


@lru_cache(maxsize=10000)
def convert_wd01_to_uhf_epc(wd01: str) -> str:
    """Convert a WD01 TID read into the EPC a UHF scanner reports.

    Args:
        wd01: 32 hex chars from the WD01 reader.

    Returns:
        24 hex char UHF EPC.

    Examples:
        >>> convert_wd01_to_uhf_epc("AABB0C0B0A090807060504030201" + "0030")
        '0102030405060708090A0B0C'
    """
    pairs = _byte_pairs(wd01.upper())
    pairs.reverse()
    return "".join(pairs[_WD01_PC_BYTES:_WD01_PC_BYTES + _UHF_EPC_BYTES])


def uhf_epc_to_reversed_hex(uhf_epc: str) -> str:
    """Byte-swap a UHF EPC (no padding), for matching against raw TID dumps."""
    pairs = _byte_pairs(normalize_epc(uhf_epc))
    pairs.reverse()
    return "".join(pairs)


def canonical_epc(raw: str) -> str:
    """Reduce a read to the identifier stored on a record.

    WD01 reads become the UHF EPC; everything else is just normalized.
    """
    epc = normalize_epc(raw)
    if is_wd01_format(epc):
        return convert_wd01_to_uhf_epc(epc)
    return epc


def candidate_epcs(raw: str) -> list[str]:
    """List the identifiers to try for a scanned string, in order.

    1. The normalized read itself.
    2. The first 24 chars, when the read is longer and all hex
       (EPC followed by trailing TID bytes).
    3. The converted UHF EPC, when the read is WD01-shaped.

    Args:
        raw: Scanned string.

    Returns:
        De-duplicated candidates; empty for an empty read.
    """
    epc = normalize_epc(raw)
    if not epc:
        return []

    candidates = [epc]
    if len(epc) > UHF_EPC_LENGTH and is_hex(epc):
        candidates.append(epc[:UHF_EPC_LENGTH])
    if is_wd01_format(epc):
        candidates.append(convert_wd01_to_uhf_epc(epc))

    return list(dict.fromkeys(candidates))


def is_graduate_epc(epc: str) -> bool:
    return bool(EPC_GRADUATE_PATTERN.match(normalize_epc(epc)))


def is_box_epc(epc: str) -> bool:
    return normalize_epc(epc).startswith(EPC_PREFIX_BOX)


def is_valid_epc(epc: str) -> bool:
    """Check if an EPC carries a recognisable graduate or box identity."""
    return is_graduate_epc(epc) or is_box_epc(epc)


def tag_type_from_epc(epc: str) -> Optional[TagType]:
    """Detect the tag type from the EPC text, None when no type is detected."""
    if is_graduate_epc(epc):
        return TagType.GRADUATE
    if is_box_epc(epc):
        return TagType.BOX
    return None


def convocation_from_epc(epc: str) -> Optional[str]:
    """For graduate tags the EPC is the convocation number."""
    if is_graduate_epc(epc):
        return normalize_epc(epc)
    return None


def box_id_from_epc(epc: str) -> Optional[str]:
    normalized = normalize_epc(epc)
    if normalized.startswith(EPC_PREFIX_BOX):
        return normalized[len(EPC_PREFIX_BOX):]
    return None
