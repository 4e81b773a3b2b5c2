"""
Ride Record Store contract
Point reads, compare-and-set field updates and subscribe-by-filter over RideRequest.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from ridecore.errors import Conflict, ValidationError
from ridecore.models.ride_schema import RideRequest, RideRequestInit, RideStatus
from ridecore.store.change_feed import ChangeFeed, Predicate, Subscription

IMMUTABLE_FIELDS = frozenset({"id", "passenger_id", "driver_id", "created_at", "version"})

PASSENGER_BUSY_MESSAGE = "You already have an active ride; finish or cancel it first"
DRIVER_BUSY_MESSAGE = "The selected driver is already busy with another ride"


def apply_update(
    current: RideRequest, fields: Dict[str, Any], now: datetime
) -> RideRequest:
    """Return the validated record that results from writing fields onto current"""
    unknown = set(fields) - set(RideRequest.model_fields)
    if unknown:
        raise ValidationError(f"Unknown ride field(s): {', '.join(sorted(unknown))}")
    frozen = IMMUTABLE_FIELDS & set(fields)
    if frozen:
        raise ValidationError(f"Ride field(s) cannot be changed: {', '.join(sorted(frozen))}")

    data = current.model_dump()
    data.update(fields)
    data["version"] = current.version + 1
    data["updated_at"] = now
    try:
        return RideRequest.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid update for ride {current.id}: {e.error_count()} invalid field(s)",
            ride_id=current.id,
        ) from e


def check_expectations(
    current: RideRequest,
    expected_status: Optional[RideStatus],
    expected_version: Optional[int],
) -> None:
    if expected_status is not None and current.status != expected_status:
        raise Conflict(
            f"Ride was changed by someone else: it is now {current.status.value}, not {RideStatus(expected_status).value}",
            ride_id=current.id,
        )
    if expected_version is not None and current.version != expected_version:
        raise Conflict(
            f"Ride was changed by someone else (version {current.version}, expected {expected_version})",
            ride_id=current.id,
        )


class RideStore(ABC):
    """
    Durable, subscribable storage of ride requests keyed by id.

    A passenger and a driver each hold at most one active ride; create raises
    Conflict when either already does.
    """

    def __init__(self):
        self._feed = ChangeFeed()

    async def start(self) -> None:
        """Begin relaying changes made outside this process (no-op by default)"""

    @abstractmethod
    async def create(self, init: RideRequestInit) -> str:
        """Persist a new pending ride; raises ValidationError on bad input"""

    @abstractmethod
    async def get(self, ride_id: str) -> RideRequest:
        """Raises NotFound for an unknown id"""

    @abstractmethod
    async def update(
        self,
        ride_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[RideStatus] = None,
        expected_version: Optional[int] = None,
    ) -> RideRequest:
        """
        Atomically write fields if the record still holds expected_status /
        expected_version; raises Conflict otherwise and NotFound if absent.
        """

    @abstractmethod
    async def query(
        self,
        predicate: Optional[Predicate] = None,
        statuses: Optional[Iterable[RideStatus]] = None,
        ride_id: Optional[str] = None,
        driver_id: Optional[str] = None,
        party_ids: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[RideRequest]:
        """
        Rides matching every given filter, oldest first unless newest_first.
        party_ids keeps rides whose passenger or driver is one of the ids.
        """

    def subscribe(self, predicate: Predicate, **filters) -> Subscription:
        """
        Live snapshots of the rides matching predicate. filters narrow the
        initial load and must not exclude anything the predicate accepts.
        """
        return self._feed.subscribe(predicate, lambda: self.query(predicate, **filters))

    def watch(self, ride_id: str) -> Subscription:
        return self.subscribe(lambda ride: ride.id == ride_id, ride_id=ride_id)

    @property
    def subscriber_count(self) -> int:
        return self._feed.subscriber_count

    async def close(self) -> None:
        self._feed.close_all()
