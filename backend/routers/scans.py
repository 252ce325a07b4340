"""Scans API Router for the convocation RFID tracker.

Handles station scans, bulk scans, final dispatch and handover.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends

from models import (
    ApiResponse,
    BulkScanRequest,
    BulkScanResult,
    DispatchRequest,
    HandoverRequest,
    ScanOutcome,
    ScanRequest,
)
from routers.deps import verify_token
from services.tracker import Tracker, get_tracker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/rfid", tags=["scans"], dependencies=[Depends(verify_token)])


@router.post("/scan", response_model=ApiResponse[ScanOutcome])
async def scan_tag(
    request: ScanRequest,
    tracker: Annotated[Tracker, Depends(get_tracker)],
) -> ApiResponse[ScanOutcome]:
    """Record one tag at a station.

    Graduate tags are also checked in on the station's ticket check-in list;
    a failed check-in is reported in ``titoCheckin`` and does not fail the scan.
    """
    outcome = await tracker.engine.process_scan(
        request.epc, request.station, request.scanned_by, request.action, request.notes
    )
    return ApiResponse(data=outcome)


@router.post("/bulk-scan", response_model=ApiResponse[BulkScanResult])
async def bulk_scan(
    request: BulkScanRequest,
    tracker: Annotated[Tracker, Depends(get_tracker)],
) -> ApiResponse[BulkScanResult]:
    """Record up to 100 tags at a station; failures are reported per EPC."""
    logger.info(f"Bulk scan of {len(request.epcs)} EPCs at {request.station.value} by {request.scanned_by}")
    result = await tracker.engine.process_bulk_scan(
        request.epcs, request.station, request.scanned_by, request.action, request.notes
    )
    return ApiResponse(data=result)


@router.post("/dispatch", response_model=ApiResponse[BulkScanResult])
async def dispatch(
    request: DispatchRequest,
    tracker: Annotated[Tracker, Depends(get_tracker)],
) -> ApiResponse[BulkScanResult]:
    """Final dispatch. Box EPCs dispatch the box and everything inside it."""
    result = await tracker.engine.process_dispatch(
        request.epcs,
        request.dispatched_by,
        tracking_number=request.tracking_number,
        dispatch_method=request.dispatch_method,
        notes=request.notes,
    )
    return ApiResponse(
        data=result,
        message=f"Dispatched {result.summary.successful} of {result.summary.total} tags",
    )


@router.post("/handover", response_model=ApiResponse[BulkScanResult])
async def handover(
    request: HandoverRequest,
    tracker: Annotated[Tracker, Depends(get_tracker)],
) -> ApiResponse[BulkScanResult]:
    """Hand tags over to a recipient. Box EPCs include their contents."""
    result = await tracker.engine.process_handover(
        request.epcs, request.handover_by, request.handover_to, request.notes
    )
    return ApiResponse(
        data=result,
        message=f"Handed over {result.summary.successful} of {result.summary.total} tags",
    )
