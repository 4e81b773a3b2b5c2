"""
Driver Routes
Drivers a passenger can pick when requesting a ride
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ridecore.models.ride_schema import Actor
from ridecore.routes.ride_routes import get_engine
from ridecore.services.dispatch_engine import DispatchEngine
from ridecore.store.user_directory import UserProfile
from ridecore.utils.helpers import calculate_distance
from ridecore.utils.jwt_utils import get_current_actor

router = APIRouter()
logger = logging.getLogger(__name__)


def _driver_to_dict(driver: UserProfile) -> dict:
    return {
        "id": driver.id,
        "name": driver.full_name,
        "phone": driver.phone,
        "vehiclePlate": driver.vehicle_plate,
        "carModel": driver.vehicle_model,
        "location": driver.location.model_dump(),
    }


@router.get("/available")
async def get_available_drivers(
    latitude: Optional[float] = Query(None, ge=-90, le=90),
    longitude: Optional[float] = Query(None, ge=-180, le=180),
    actor: Actor = Depends(get_current_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    """
    Online drivers with a completed profile and a known position.
    With latitude and longitude, nearest first with distanceKm.
    """
    if engine.users is None:
        return {"success": True, "count": 0, "drivers": []}

    drivers = [_driver_to_dict(d) for d in await engine.users.list_dispatchable()]

    if latitude is not None and longitude is not None:
        for driver in drivers:
            location = driver["location"]
            driver["distanceKm"] = round(
                calculate_distance(
                    latitude, longitude, location["latitude"], location["longitude"]
                ),
                2,
            )
        drivers.sort(key=lambda d: d["distanceKm"])

    logger.debug(f"{len(drivers)} drivers available for {actor.user_id}")
    return {"success": True, "count": len(drivers), "drivers": drivers}
