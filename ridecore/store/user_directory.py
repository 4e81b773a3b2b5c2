"""
User Directory
Read-only view of user profiles used for dispatch admission
"""

import logging
from typing import Dict, List, Optional

from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from ridecore.models.ride_schema import Coordinate
from ridecore.models.user_model import User

logger = logging.getLogger(__name__)


class UserProfile(BaseModel):
    id: str
    role: str
    full_name: Optional[str] = None
    phone: Optional[str] = None
    vehicle_plate: Optional[str] = None
    vehicle_model: Optional[str] = None
    is_online: bool = False
    profile_completed: bool = False
    location: Optional[Coordinate] = None

    @property
    def is_dispatchable(self) -> bool:
        """Driver that is online and has finished profile setup"""
        return self.role == "driver" and self.is_online and self.profile_completed


class UserDirectory:
    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        raise NotImplementedError

    async def list_dispatchable(self) -> List[UserProfile]:
        """Drivers a passenger can pick right now: dispatchable and located"""
        raise NotImplementedError


class InMemoryUserDirectory(UserDirectory):
    def __init__(self):
        self._users: Dict[str, UserProfile] = {}

    def add(self, profile: UserProfile) -> UserProfile:
        self._users[profile.id] = profile
        return profile

    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        return self._users.get(user_id)

    async def list_dispatchable(self) -> List[UserProfile]:
        return [
            user
            for user in self._users.values()
            if user.is_dispatchable and user.location is not None
        ]


def _point_to_coordinate(point) -> Optional[Coordinate]:
    """GeoJSON point or [lng, lat] pair -> Coordinate"""
    if not point:
        return None
    coordinates = point.get("coordinates") if isinstance(point, dict) else point
    if not coordinates or len(coordinates) != 2:
        return None
    # GeoJSON order is [longitude, latitude]
    return Coordinate(latitude=coordinates[1], longitude=coordinates[0])


def _to_profile(user: User) -> UserProfile:
    return UserProfile(
        id=str(user.id),
        role=user.role,
        full_name=user.full_name,
        phone=user.phone,
        vehicle_plate=user.vehicle_plate,
        vehicle_model=user.vehicle_model,
        is_online=bool(user.is_online),
        profile_completed=bool(user.profile_completed),
        location=_point_to_coordinate(user.location),
    )


class MongoUserDirectory(UserDirectory):
    def _find(self, user_id: str) -> Optional[User]:
        return User.objects(pk=user_id).first()

    def _find_dispatchable(self) -> List[User]:
        return list(
            User.objects(role="driver", is_online=True, profile_completed=True).order_by("id")
        )

    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        user = await run_in_threadpool(self._find, user_id)
        if user is None:
            return None
        return _to_profile(user)

    async def list_dispatchable(self) -> List[UserProfile]:
        users = await run_in_threadpool(self._find_dispatchable)
        profiles = [_to_profile(user) for user in users]
        return [profile for profile in profiles if profile.location is not None]
