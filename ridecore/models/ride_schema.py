"""
Ride Schema - canonical shape of a ride request document
Every record read from a store passes through normalize_ride_document, so the rest
of the code only ever sees one naming convention.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ridecore.errors import ValidationError
from ridecore.utils.helpers import round_half_up


class RideStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    ARRIVED = "arrived"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {RideStatus.COMPLETED, RideStatus.CANCELLED, RideStatus.REJECTED}
)
ACTIVE_STATUSES = frozenset(set(RideStatus) - TERMINAL_STATUSES)


class ActorRole(str, Enum):
    PASSENGER = "passenger"
    DRIVER = "driver"
    SYSTEM = "system"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    """Who is issuing a lifecycle command"""

    user_id: str
    role: ActorRole

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id="system", role=ActorRole.SYSTEM)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Coordinate(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)

    def as_tuple(self) -> Tuple[float, float]:
        return (self.latitude, self.longitude)


class Pickup(Coordinate):
    address: Optional[str] = None
    display_name: Optional[str] = None


class Destination(Coordinate):
    display_name: str = Field(..., min_length=1)
    address: Optional[str] = None


class CamelModel(BaseModel):
    """Snake_case attributes, camelCase document fields"""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class RideRequestInit(CamelModel):
    passenger_id: str = Field(..., min_length=1)
    driver_id: str = Field(..., min_length=1)
    pickup: Pickup
    destination: Destination


_TIMESTAMP_FIELDS = (
    "created_at",
    "accepted_at",
    "started_at",
    "arrived_at",
    "completed_at",
    "cancelled_at",
)


class RideRequest(CamelModel):
    """
    One passenger trip from creation to a terminal status.
    distance/duration describe the leg currently in route_coordinates.
    """

    id: str
    passenger_id: str
    driver_id: str
    status: RideStatus = RideStatus.PENDING

    pickup: Pickup
    destination: Destination
    route_coordinates: List[Coordinate] = Field(default_factory=list)
    driver_location: Optional[Coordinate] = None

    distance: Optional[str] = None
    duration: Optional[str] = None
    distance_km: Optional[float] = None
    duration_minutes: Optional[float] = None
    fare: Optional[int] = None

    passenger_boarded: bool = False
    passenger_boarded_at: Optional[datetime] = None

    created_at: datetime
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    cancelled_by: Optional[ActorRole] = None
    cancel_reason: Optional[str] = None

    rating: Optional[int] = Field(default=None, ge=1, le=5)
    comment: Optional[str] = None
    rated_at: Optional[datetime] = None

    updated_at: Optional[datetime] = None
    version: int = 0

    @field_validator(
        *_TIMESTAMP_FIELDS, "passenger_boarded_at", "rated_at", "updated_at"
    )
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Mongo hands back naive UTC datetimes
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.passenger_id, self.driver_id)

    def latest_timestamp(self) -> datetime:
        stamps = [getattr(self, name) for name in _TIMESTAMP_FIELDS]
        return max(stamp for stamp in stamps if stamp is not None)

    def to_dict(self) -> Dict[str, Any]:
        """Document shape used on the wire and in snapshots"""
        return self.model_dump(by_alias=True, mode="json")

    def __str__(self):
        return f"RideRequest({self.id}, {self.status.value})"


# Field names written by older mobile clients -> canonical document names
LEGACY_FIELD_NAMES = {
    "_id": "id",
    "pickupLocation": "pickup",
    "dropoffLocation": "destination",
    "actualDistance": "distance",
    "actualDuration": "duration",
    "calculatedFare": "fare",
    "requestTime": "createdAt",
}


def _is_blank(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def normalize_ride_document(raw: Dict[str, Any]) -> RideRequest:
    """
    Map a stored document (canonical or legacy naming) onto RideRequest.

    Raises:
        ValidationError: if the document cannot be made canonical
    """
    doc: Dict[str, Any] = {
        key: value for key, value in raw.items() if key not in LEGACY_FIELD_NAMES
    }
    for legacy, canonical in LEGACY_FIELD_NAMES.items():
        if legacy in raw and _is_blank(doc.get(canonical)):
            doc[canonical] = raw[legacy]

    if "id" in doc:
        doc["id"] = str(doc["id"])
    if _is_blank(doc.get("status")):
        doc["status"] = RideStatus.PENDING.value
    if doc.get("version") is None:
        doc["version"] = 0

    destination = doc.get("destination")
    if isinstance(destination, dict) and _is_blank(destination.get("display_name")):
        destination = dict(destination)
        destination["display_name"] = destination.get("address")
        doc["destination"] = destination

    if doc.get("fare") is not None:
        doc["fare"] = round_half_up(float(doc["fare"]))

    try:
        return RideRequest.model_validate(doc)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Ride document {doc.get('id', '?')} is malformed: {e.error_count()} invalid field(s)",
            ride_id=doc.get("id"),
        ) from e


def parse_ride_init(data: Any) -> RideRequestInit:
    """Validate creation input, raising the ride-core ValidationError"""
    if isinstance(data, RideRequestInit):
        return data
    try:
        return RideRequestInit.model_validate(data)
    except PydanticValidationError as e:
        missing = [
            ".".join(str(part) for part in err["loc"]) for err in e.errors()
        ]
        raise ValidationError(
            f"Ride request is missing or has invalid fields: {', '.join(missing)}"
        ) from e
