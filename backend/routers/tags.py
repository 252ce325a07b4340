"""Tags API Router for the convocation RFID tracker.

Handles encoding, verification, voiding and box endpoints.

Data Flow:
- The encoding station writes a tag and registers its EPC here
- Verification screens and handheld bridges look reads up here
- Packing adds graduate tags to box tags
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from models import (
    ApiResponse,
    BatchVerifyRequest,
    BatchVerifyResult,
    BoxAddRequest,
    BoxContents,
    EncodedCheck,
    EncodeRequest,
    RfidTag,
    VerifyResult,
    VoidRequest,
)
from routers.deps import verify_token
from services.tracker import Tracker, get_tracker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/rfid", tags=["rfid"], dependencies=[Depends(verify_token)])


@router.post("/encode", response_model=ApiResponse[RfidTag])
async def encode_tag(
    request: EncodeRequest,
    tracker: Annotated[Tracker, Depends(get_tracker)],
) -> ApiResponse[RfidTag]:
    """Register a freshly encoded tag.

    WD01 reads are converted to the UHF EPC. Graduate tags are enriched with
    name and ticket. Rejects an EPC that is already registered (409).
    """
    tag = await tracker.engine.encode(
        epc=request.epc,
        tag_type=request.type,
        encoded_by=request.encoded_by,
        convocation_number=request.convocation_number,
        box_id=request.box_id,
        box_label=request.box_label,
    )
    return ApiResponse(data=tag, message=f"Tag {tag.epc} encoded")


@router.get("/encode", response_model=ApiResponse[EncodedCheck])
async def check_encoded(
    epc: Annotated[str, Query(min_length=1)],
    tracker: Annotated[Tracker, Depends(get_tracker)],
) -> ApiResponse[EncodedCheck]:
    """Check whether a read is already registered."""
    return ApiResponse(data=await tracker.lookup.is_encoded(epc))


@router.get("/verify", response_model=ApiResponse[VerifyResult])
async def verify_tag(
    epc: Annotated[str, Query(min_length=1)],
    tracker: Annotated[Tracker, Depends(get_tracker)],
) -> ApiResponse[VerifyResult]:
    """Look up one read by EPC (with fallbacks) or convocation number.

    Unregistered reads answer ``found: false``, not an error.
    """
    result = await tracker.lookup.verify(epc)
    return ApiResponse(data=result, message=result.message)


@router.post("/verify", response_model=ApiResponse[BatchVerifyResult])
async def verify_tags(
    request: BatchVerifyRequest,
    tracker: Annotated[Tracker, Depends(get_tracker)],
) -> ApiResponse[BatchVerifyResult]:
    """Verify many reads at once."""
    return ApiResponse(data=await tracker.lookup.verify_many(request.epcs))


@router.post("/void", response_model=ApiResponse[RfidTag])
async def void_tag(
    request: VoidRequest,
    tracker: Annotated[Tracker, Depends(get_tracker)],
) -> ApiResponse[RfidTag]:
    """Void a tag. Voided tags are rejected by every station operation."""
    tag = await tracker.engine.void_tag(request.epc, request.reason, request.voided_by)
    return ApiResponse(data=tag, message=f"Tag {tag.epc} voided")


@router.get("/boxes/{epc}", response_model=ApiResponse[BoxContents])
async def get_box(
    epc: str,
    tracker: Annotated[Tracker, Depends(get_tracker)],
) -> ApiResponse[BoxContents]:
    """Get a box and the tags inside it."""
    return ApiResponse(data=await tracker.engine.get_box_contents(epc))


@router.post("/boxes/{epc}/items", response_model=ApiResponse[RfidTag])
async def add_box_items(
    epc: str,
    request: BoxAddRequest,
    tracker: Annotated[Tracker, Depends(get_tracker)],
) -> ApiResponse[RfidTag]:
    """Add tags to a box. Boxes cannot be placed inside boxes."""
    box = await tracker.engine.add_items_to_box(epc, request.item_epcs)
    return ApiResponse(data=box, message=f"Box {box.epc} holds {len(box.box_contents or [])} items")
