"""
Ride Model - MongoDB persistence of ride requests
Field names on disk follow the shared document shape (camelCase)
"""

from uuid import uuid4

from mongoengine import (
    BooleanField,
    DateTimeField,
    Document,
    EmbeddedDocument,
    EmbeddedDocumentField,
    FloatField,
    IntField,
    ListField,
    StringField,
)

from ridecore.models.ride_schema import ActorRole, RideStatus


class GeoPoint(EmbeddedDocument):
    """Latitude/longitude pair with optional display text"""

    meta = {"strict": False}

    latitude = FloatField(required=True, min_value=-90, max_value=90)
    longitude = FloatField(required=True, min_value=-180, max_value=180)
    address = StringField(max_length=300)
    display_name = StringField(max_length=300)


def _new_ride_id() -> str:
    return uuid4().hex


class Ride(Document):
    """
    Ride request document
    Status flow: pending → accepted → in_progress → arrived → completed
    (rejected from pending; cancelled from any non-terminal status)
    """

    meta = {
        "collection": "rideRequests",
        "indexes": ["status", "passenger_id", "driver_id", "-created_at"],
        "strict": False,
    }

    id = StringField(primary_key=True, default=_new_ride_id)

    # Participants
    passenger_id = StringField(required=True, db_field="passengerId")
    driver_id = StringField(required=True, db_field="driverId")

    status = StringField(
        required=True,
        choices=[s.value for s in RideStatus],
        default=RideStatus.PENDING.value,
    )

    # Location Details
    pickup = EmbeddedDocumentField(GeoPoint, required=True)
    destination = EmbeddedDocumentField(GeoPoint, required=True)
    route_coordinates = ListField(
        EmbeddedDocumentField(GeoPoint), db_field="routeCoordinates"
    )
    driver_location = EmbeddedDocumentField(GeoPoint, db_field="driverLocation")

    # Current leg metrics
    distance = StringField(max_length=50)
    duration = StringField(max_length=50)
    distance_km = FloatField(db_field="distanceKm")
    duration_minutes = FloatField(db_field="durationMinutes")
    fare = IntField(min_value=0)

    passenger_boarded = BooleanField(default=False, db_field="passengerBoarded")
    passenger_boarded_at = DateTimeField(db_field="passengerBoardedAt")

    # Timestamps for lifecycle tracking
    created_at = DateTimeField(required=True, db_field="createdAt")
    accepted_at = DateTimeField(db_field="acceptedAt")
    started_at = DateTimeField(db_field="startedAt")
    arrived_at = DateTimeField(db_field="arrivedAt")
    completed_at = DateTimeField(db_field="completedAt")
    cancelled_at = DateTimeField(db_field="cancelledAt")
    updated_at = DateTimeField(db_field="updatedAt")

    cancelled_by = StringField(
        choices=[ActorRole.PASSENGER.value, ActorRole.DRIVER.value, ActorRole.SYSTEM.value],
        db_field="cancelledBy",
    )
    cancel_reason = StringField(max_length=500, db_field="cancelReason")

    rating = IntField(min_value=1, max_value=5)
    comment = StringField(max_length=500)
    rated_at = DateTimeField(db_field="ratedAt")

    # Optimistic concurrency counter
    version = IntField(default=0)

    def __str__(self):
        return f"Ride({self.id}, {self.status})"


class RideSlot(Document):
    """
    Claim on a participant's single active ride.
    The key is "passenger:<id>" or "driver:<id>", so a second claim fails on
    the unique _id no matter which process makes it.
    """

    meta = {
        "collection": "rideSlots",
        "indexes": ["ride_id"],
        "strict": False,
    }

    id = StringField(primary_key=True)
    ride_id = StringField(required=True, db_field="rideId")
    claimed_at = DateTimeField(required=True, db_field="claimedAt")
