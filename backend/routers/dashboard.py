"""Dashboard API Router for the convocation RFID tracker.

Read-only population views for the control room.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from errors import TagValidationError
from models import ApiResponse, DashboardStats, ReconciliationReport
from routers.deps import verify_token
from services.stations import parse_station
from services.tracker import Tracker, get_tracker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/rfid", tags=["dashboard"], dependencies=[Depends(verify_token)])


@router.get("/dashboard", response_model=ApiResponse[DashboardStats])
async def get_dashboard(
    tracker: Annotated[Tracker, Depends(get_tracker)],
) -> ApiResponse[DashboardStats]:
    """Get population counts, the station breakdown and recent scans."""
    return ApiResponse(data=await tracker.reconciliation.get_dashboard_stats())


@router.post("/dashboard", response_model=ApiResponse[DashboardStats])
async def refresh_dashboard(
    tracker: Annotated[Tracker, Depends(get_tracker)],
) -> ApiResponse[DashboardStats]:
    """Drop the cached population and recompute the dashboard."""
    stats = await tracker.reconciliation.refresh_dashboard_stats()
    return ApiResponse(data=stats, message="Cache cleared and stats refreshed")


@router.get("/reconciliation", response_model=ApiResponse[ReconciliationReport])
async def get_reconciliation(
    station: Annotated[str, Query(min_length=1)],
    tracker: Annotated[Tracker, Depends(get_tracker)],
) -> ApiResponse[ReconciliationReport]:
    """Compare every live tag against a station's pipeline position."""
    parsed = parse_station(station)
    if parsed is None:
        raise TagValidationError(f"Invalid station: {station}")
    return ApiResponse(data=await tracker.reconciliation.get_reconciliation_for_station(parsed))
