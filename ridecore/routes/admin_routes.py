"""
Admin Routes
Read-only ride views, platform statistics and forced cancellation
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from ridecore.models.ride_schema import ACTIVE_STATUSES, Actor, RideStatus
from ridecore.routes.ride_routes import CancelBody, get_engine
from ridecore.services.dispatch_engine import DispatchEngine
from ridecore.services.ride_stats import compute_ride_statistics
from ridecore.utils.jwt_utils import require_admin

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/rides")
async def get_all_rides(
    status_filter: Optional[RideStatus] = Query(None, alias="status", description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000, description="Number of rides to return"),
    admin: Actor = Depends(require_admin),
    engine: DispatchEngine = Depends(get_engine),
):
    """
    Get all rides with optional status filter, newest first
    Admin only
    """
    statuses = [status_filter] if status_filter else None
    rides = await engine.store.query(statuses=statuses, limit=limit, newest_first=True)

    return {
        "success": True,
        "count": len(rides),
        "rides": [ride.to_dict() for ride in rides],
    }


@router.get("/rides/active")
async def get_active_rides(
    admin: Actor = Depends(require_admin),
    engine: DispatchEngine = Depends(get_engine),
):
    rides = await engine.store.query(statuses=ACTIVE_STATUSES)
    return {
        "success": True,
        "count": len(rides),
        "rides": [ride.to_dict() for ride in rides],
    }


@router.get("/stats")
async def get_platform_stats(
    request: Request,
    admin: Actor = Depends(require_admin),
    engine: DispatchEngine = Depends(get_engine),
):
    """
    Get aggregated ride statistics
    Admin only
    """
    rides = await engine.store.query()
    stats = compute_ride_statistics(rides)
    stats["realtime"] = {
        "subscriptions": engine.store.subscriber_count,
        **request.app.state.connections.get_stats(),
    }
    return {"success": True, "stats": stats}


@router.post("/rides/{ride_id}/cancel")
async def force_cancel_ride(
    ride_id: str,
    data: Optional[CancelBody] = None,
    admin: Actor = Depends(require_admin),
    engine: DispatchEngine = Depends(get_engine),
):
    """
    Cancel any non-terminal ride; recorded as cancelled by the system
    Admin only
    """
    reason = (data.reason if data else None) or "Cancelled by support"
    ride = await engine.cancel(ride_id, admin, reason)

    logger.warning(f"Ride {ride_id} force-cancelled by admin {admin.user_id}")

    return {
        "success": True,
        "message": "Ride cancelled successfully",
        "ride": ride.to_dict(),
    }
