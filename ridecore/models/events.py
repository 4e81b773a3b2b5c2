"""
WebSocket Event Models
Defines structured event types for real-time communication
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ridecore.models.location_model import LocationUpdate


class LocationUpdateMessage(LocationUpdate):
    """Inbound location_update event from a driver"""

    event_type: str = "location_update"
    ride_id: str = Field(..., min_length=1)


class RideSnapshotEvent(BaseModel):
    """Pushed whenever a subscribed ride changes"""

    event_type: str = "ride_snapshot"
    ride_id: str
    ride: Optional[Dict[str, Any]] = None  # None once the ride no longer exists
    timestamp: str


class PendingRidesEvent(BaseModel):
    """Pushed to a driver whenever their set of pending requests changes"""

    event_type: str = "pending_rides"
    rides: List[Dict[str, Any]]
    timestamp: str


class ErrorEvent(BaseModel):
    event_type: str = "error"
    message: str
    error: Optional[str] = None
