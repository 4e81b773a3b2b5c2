"""
User Model - profile data owned by the identity/profile service
The dispatch core only reads it to decide whether a driver can take rides.
"""

from datetime import datetime, timezone

from mongoengine import (
    BooleanField,
    DateTimeField,
    Document,
    PointField,
    StringField,
)


def _utcnow():
    return datetime.now(timezone.utc)


class User(Document):
    """
    Passenger, driver or admin profile
    Role determines which lifecycle commands the user may issue
    """

    meta = {
        "collection": "users",
        "indexes": ["role", "is_online"],
        "strict": False,
    }

    # Same id the identity provider puts in the token
    id = StringField(primary_key=True)

    full_name = StringField(max_length=100)
    phone = StringField(max_length=20)
    role = StringField(
        required=True, choices=["passenger", "driver", "admin"], default="passenger"
    )

    # Driver-specific fields
    vehicle_plate = StringField(max_length=20, db_field="vehiclePlate")
    vehicle_model = StringField(max_length=50, db_field="carModel")
    is_online = BooleanField(default=False, db_field="isOnline")
    profile_completed = BooleanField(default=False, db_field="profileCompleted")

    location = PointField(
        auto_index=False
    )  # GeoJSON Point: {"type": "Point", "coordinates": [longitude, latitude]}

    created_at = DateTimeField(default=_utcnow, db_field="createdAt")
    updated_at = DateTimeField(default=_utcnow, db_field="updatedAt")

    def __str__(self):
        return f"User({self.id}, {self.role})"
