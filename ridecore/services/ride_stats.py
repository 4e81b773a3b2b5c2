"""
Ride Statistics
Aggregated platform figures for the admin dashboard and per-driver totals
"""

from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from ridecore.models.ride_schema import (
    ACTIVE_STATUSES,
    RideRequest,
    RideStatus,
    utcnow,
)
from ridecore.utils.helpers import parse_distance


def compute_ride_statistics(
    rides: Iterable[RideRequest], now: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Count rides per status and sum completed-ride revenue.

    Args:
        rides: every ride to include
        now: reference time for the "today" figures (UTC midnight boundary)

    Returns:
        {"rides": {...counts}, "revenue": {"total", "average_fare"}}
    """
    now = now or utcnow()
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

    by_status = {status.value: 0 for status in RideStatus}
    total = active = rides_today = completed_today = 0
    total_revenue = 0
    completed = 0

    for ride in rides:
        total += 1
        by_status[ride.status.value] += 1
        if ride.status in ACTIVE_STATUSES:
            active += 1
        if ride.created_at >= today_start:
            rides_today += 1
        if ride.status == RideStatus.COMPLETED:
            completed += 1
            total_revenue += ride.fare or 0
            if ride.completed_at and ride.completed_at >= today_start:
                completed_today += 1

    avg_fare = total_revenue / completed if completed > 0 else 0

    return {
        "rides": {
            "total": total,
            "active": active,
            "by_status": by_status,
            "today": rides_today,
            "completed_today": completed_today,
        },
        "revenue": {
            "total": total_revenue,
            "average_fare": round(avg_fare, 2),
        },
    }


def compute_driver_earnings(rides: Iterable[RideRequest]) -> Dict[str, Any]:
    """
    Totals over a driver's completed rides: earnings, distance driven with a
    passenger on board and ride count. Other statuses are ignored.
    """
    completed = total_earnings = 0
    total_distance = 0.0

    for ride in rides:
        if ride.status != RideStatus.COMPLETED:
            continue
        completed += 1
        total_earnings += ride.fare or 0
        # documents from older clients only carry the display label
        if ride.distance_km is not None:
            total_distance += ride.distance_km
        else:
            total_distance += parse_distance(ride.distance)

    return {
        "completed_rides": completed,
        "total_earnings": total_earnings,
        "total_distance_km": round(total_distance, 1),
        "average_fare": round(total_earnings / completed, 2) if completed else 0,
    }
