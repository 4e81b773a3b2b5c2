"""
In-process RideStore used for development and tests
"""

import logging
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from ridecore.errors import Conflict, NotFound
from ridecore.models.ride_schema import (
    ACTIVE_STATUSES,
    RideRequest,
    RideStatus,
    normalize_ride_document,
    parse_ride_init,
    utcnow,
)
from ridecore.store.base import (
    DRIVER_BUSY_MESSAGE,
    PASSENGER_BUSY_MESSAGE,
    RideStore,
    apply_update,
    check_expectations,
)
from ridecore.store.change_feed import Predicate

logger = logging.getLogger(__name__)


class InMemoryRideStore(RideStore):
    def __init__(self):
        super().__init__()
        self._rides: Dict[str, RideRequest] = {}

    def _check_participants_free(self, passenger_id: str, driver_id: str) -> None:
        for ride in self._rides.values():
            if ride.status not in ACTIVE_STATUSES:
                continue
            if ride.passenger_id == passenger_id:
                raise Conflict(PASSENGER_BUSY_MESSAGE, ride_id=ride.id)
            if ride.driver_id == driver_id:
                raise Conflict(DRIVER_BUSY_MESSAGE)

    async def create(self, init) -> str:
        init = parse_ride_init(init)
        self._check_participants_free(init.passenger_id, init.driver_id)
        now = utcnow()
        ride = RideRequest(
            id=uuid4().hex,
            passenger_id=init.passenger_id,
            driver_id=init.driver_id,
            status=RideStatus.PENDING,
            pickup=init.pickup,
            destination=init.destination,
            created_at=now,
            updated_at=now,
        )
        self._rides[ride.id] = ride
        logger.info(f"Ride {ride.id} created for passenger {ride.passenger_id}")
        self._feed.publish(ride)
        return ride.id

    def load_document(self, raw: Dict[str, Any]) -> RideRequest:
        """Import a stored document as-is (legacy names are normalized)"""
        ride = normalize_ride_document(raw)
        self._rides[ride.id] = ride
        self._feed.publish(ride)
        return ride

    async def get(self, ride_id: str) -> RideRequest:
        ride = self._rides.get(ride_id)
        if ride is None:
            raise NotFound(ride_id)
        return ride

    async def update(
        self,
        ride_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[RideStatus] = None,
        expected_version: Optional[int] = None,
    ) -> RideRequest:
        # no await between the check and the write, so this is atomic on the loop
        current = await self.get(ride_id)
        check_expectations(current, expected_status, expected_version)
        updated = apply_update(current, fields, utcnow())
        self._rides[ride_id] = updated
        self._feed.publish(updated)
        return updated

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
        wanted = set(statuses) if statuses is not None else None
        parties = set(party_ids) if party_ids is not None else None
        if ride_id is not None:
            candidates = [self._rides[ride_id]] if ride_id in self._rides else []
        else:
            candidates = list(self._rides.values())

        rides = [
            ride
            for ride in candidates
            if (wanted is None or ride.status in wanted)
            and (driver_id is None or ride.driver_id == driver_id)
            and (parties is None or ride.passenger_id in parties or ride.driver_id in parties)
            and (predicate is None or predicate(ride))
        ]
        rides.sort(key=lambda r: r.created_at, reverse=newest_first)
        return rides[:limit] if limit is not None else rides
