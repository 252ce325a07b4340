"""Services package for the convocation RFID tracker."""

from services.epc import candidate_epcs, canonical_epc, convert_wd01_to_uhf_epc, is_wd01_format, normalize_epc
from services.lifecycle import TagLifecycleEngine

__all__ = [
    "candidate_epcs",
    "canonical_epc",
    "convert_wd01_to_uhf_epc",
    "is_wd01_format",
    "normalize_epc",
    "TagLifecycleEngine",
]
