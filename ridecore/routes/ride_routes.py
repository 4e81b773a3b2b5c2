"""
Ride Management Routes
Ride requests and the lifecycle commands of passengers and drivers.
Lifecycle failures are RideErrors, turned into responses by the app-level handler.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field

from ridecore.models.location_model import LocationUpdate
from ridecore.models.ride_schema import (
    Actor,
    CamelModel,
    Destination,
    Pickup,
    RideStatus,
)
from ridecore.services.dispatch_engine import DispatchEngine
from ridecore.services.ride_stats import compute_driver_earnings
from ridecore.utils.helpers import get_ride_status_message
from ridecore.utils.jwt_utils import get_current_actor, require_driver, require_passenger

router = APIRouter()
logger = logging.getLogger(__name__)


def get_engine(request: Request) -> DispatchEngine:
    return request.app.state.engine


# Pydantic models for request validation
class CreateRideBody(CamelModel):
    driver_id: str = Field(..., min_length=1)
    pickup: Pickup
    destination: Destination


class AcceptBody(CamelModel):
    driver_location: Optional[LocationUpdate] = None


class CancelBody(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class RateBody(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=500)


def _ride_response(ride, message: Optional[str] = None) -> dict:
    return {
        "success": True,
        "message": message or get_ride_status_message(ride.status.value),
        "ride": ride.to_dict(),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_ride_request(
    data: CreateRideBody,
    actor: Actor = Depends(require_passenger),
    engine: DispatchEngine = Depends(get_engine),
):
    """Passenger requests a ride from the driver they picked"""
    ride = await engine.create_ride(
        actor,
        {
            "passenger_id": actor.user_id,
            "driver_id": data.driver_id,
            "pickup": data.pickup,
            "destination": data.destination,
        },
    )
    return _ride_response(ride, "Ride requested, waiting for the driver")


@router.get("")
async def get_my_rides(
    status_filter: Optional[RideStatus] = Query(None, alias="status", description="Filter by status"),
    actor: Actor = Depends(get_current_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    """Rides the caller is a party to, oldest first"""
    rides = await engine.list_rides(actor, status_filter)
    return {
        "success": True,
        "count": len(rides),
        "rides": [ride.to_dict() for ride in rides],
    }


@router.get("/stats")
async def get_driver_earnings(
    actor: Actor = Depends(require_driver),
    engine: DispatchEngine = Depends(get_engine),
):
    """Earnings, distance and ride count over the driver's completed rides"""
    rides = await engine.store.query(
        statuses=[RideStatus.COMPLETED], driver_id=actor.user_id
    )
    return {"success": True, "stats": compute_driver_earnings(rides)}


@router.get("/{ride_id}")
async def get_ride(
    ride_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    ride = await engine.get_ride(ride_id, actor)
    return {"success": True, "ride": ride.to_dict()}


@router.post("/{ride_id}/accept")
async def accept_ride(
    ride_id: str,
    data: Optional[AcceptBody] = None,
    actor: Actor = Depends(get_current_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    """
    Driver accepts a pending request.
    The current location may be sent along; otherwise the profile location is used.
    """
    location = data.driver_location.location() if data and data.driver_location else None
    ride = await engine.accept(ride_id, actor, location)
    return _ride_response(ride, "Ride accepted successfully")


@router.post("/{ride_id}/reject")
async def reject_ride(
    ride_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    ride = await engine.reject(ride_id, actor)
    return _ride_response(ride, "Ride rejected")


@router.post("/{ride_id}/board")
async def confirm_boarding(
    ride_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    """Passenger confirms they are in the vehicle"""
    ride = await engine.confirm_boarding(ride_id, actor)
    return _ride_response(ride, "Boarding confirmed")


@router.post("/{ride_id}/start")
async def start_ride(
    ride_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    ride = await engine.start(ride_id, actor)
    return _ride_response(ride, "Ride started successfully")


@router.post("/{ride_id}/arrive")
async def arrive_ride(
    ride_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    ride = await engine.arrive(ride_id, actor)
    return _ride_response(ride)


@router.post("/{ride_id}/cancel")
async def cancel_ride(
    ride_id: str,
    data: Optional[CancelBody] = None,
    actor: Actor = Depends(get_current_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    ride = await engine.cancel(ride_id, actor, data.reason if data else None)
    return _ride_response(ride, "Ride cancelled successfully")


@router.post("/{ride_id}/rate")
async def rate_ride(
    ride_id: str,
    data: RateBody,
    actor: Actor = Depends(get_current_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    ride = await engine.rate(ride_id, actor, data.rating, data.comment)
    return _ride_response(ride, "Thanks for rating your ride")


@router.post("/{ride_id}/location")
async def update_driver_location(
    ride_id: str,
    data: LocationUpdate,
    actor: Actor = Depends(get_current_actor),
    engine: DispatchEngine = Depends(get_engine),
):
    """Driver GPS push; stops the simulated feed for this ride"""
    ride = await engine.update_driver_location(ride_id, actor, data.location())
    return {
        "success": True,
        "driverLocation": ride.driver_location.model_dump() if ride.driver_location else None,
    }
