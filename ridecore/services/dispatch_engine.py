"""
Dispatch / Lifecycle Engine
Validates and applies ride status transitions requested by passengers, drivers
and the system, and owns the timers and position feeds those transitions start.

Commands for one ride are serialized in-process; every write is additionally a
compare-and-set on the status the command validated, so a racing writer in
another process surfaces as Conflict instead of a lost update.
"""

import asyncio
import logging
import weakref
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from ridecore.errors import (
    Conflict,
    Forbidden,
    InvalidTransition,
    NotFound,
    PreconditionFailed,
    RideError,
    ValidationError,
)
from ridecore.models.ride_schema import (
    ACTIVE_STATUSES,
    Actor,
    ActorRole,
    Coordinate,
    RideRequest,
    RideRequestInit,
    RideStatus,
    parse_ride_init,
    utcnow,
)
from ridecore.services.estimator import TripEstimator
from ridecore.services.simulation import PositionSimulator
from ridecore.store.base import DRIVER_BUSY_MESSAGE, PASSENGER_BUSY_MESSAGE, RideStore
from ridecore.store.user_directory import UserDirectory
from ridecore.utils.maps_utils import GoogleReverseGeocoder

logger = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 2.0

SettlementHook = Callable[[RideRequest], Awaitable[None]]


def _plain(location: Coordinate) -> Coordinate:
    return Coordinate(latitude=location.latitude, longitude=location.longitude)


class DispatchEngine:
    def __init__(
        self,
        store: RideStore,
        estimator: TripEstimator,
        users: Optional[UserDirectory] = None,
        geocoder: Optional[GoogleReverseGeocoder] = None,
        simulator: Optional[PositionSimulator] = None,
        completion_grace_seconds: float = DEFAULT_GRACE_SECONDS,
        settlement_hook: Optional[SettlementHook] = None,
    ):
        self.store = store
        self.estimator = estimator
        self.users = users
        self.geocoder = geocoder
        self.simulator = simulator
        self.completion_grace_seconds = completion_grace_seconds
        self.settlement_hook = settlement_hook

        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self._admission_lock = asyncio.Lock()
        self._completion_timers: Dict[str, asyncio.Task] = {}

    # -------------------------------------------------------------------------
    # Guards
    # -------------------------------------------------------------------------

    def _lock_for(self, ride_id: str) -> asyncio.Lock:
        lock = self._locks.get(ride_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[ride_id] = lock
        return lock

    @staticmethod
    def _require_driver(ride: RideRequest, actor: Actor, command: str) -> None:
        if actor.role != ActorRole.DRIVER or actor.user_id != ride.driver_id:
            raise Forbidden(
                f"Only the assigned driver can {command} this ride", ride_id=ride.id
            )

    @staticmethod
    def _require_passenger(ride: RideRequest, actor: Actor, command: str) -> None:
        if actor.role != ActorRole.PASSENGER or actor.user_id != ride.passenger_id:
            raise Forbidden(
                f"Only the passenger who requested this ride can {command} it",
                ride_id=ride.id,
            )

    @staticmethod
    def _require_status(ride: RideRequest, expected: RideStatus, command: str) -> None:
        if ride.status != expected:
            logger.warning(
                f"Invalid transition attempt: {command} on ride {ride.id} ({ride.status.value})"
            )
            raise InvalidTransition(ride.id, ride.status.value, command)

    @staticmethod
    def _stamp(ride: RideRequest) -> datetime:
        """Now, but never earlier than a timestamp the ride already carries"""
        return max(utcnow(), ride.latest_timestamp())

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_ride(self, ride_id: str, actor: Actor) -> RideRequest:
        ride = await self.store.get(ride_id)
        if actor.role in (ActorRole.ADMIN, ActorRole.SYSTEM):
            return ride
        if not ride.is_party(actor.user_id):
            raise Forbidden("You are not a party to this ride", ride_id=ride_id)
        return ride

    async def list_rides(
        self, actor: Actor, status: Optional[RideStatus] = None
    ) -> List[RideRequest]:
        statuses = [status] if status is not None else None
        if actor.role in (ActorRole.ADMIN, ActorRole.SYSTEM):
            return await self.store.query(statuses=statuses)
        return await self.store.query(
            lambda ride: ride.is_party(actor.user_id),
            statuses=statuses,
            party_ids=[actor.user_id],
        )

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def create_ride(self, actor: Actor, data) -> RideRequest:
        """
        Passenger requests a ride from one pre-selected driver

        Raises:
            ValidationError: missing/invalid fields
            Forbidden: actor is not the passenger named in the request
            PreconditionFailed: driver is unknown, offline or not set up
            Conflict: passenger or driver already has an active ride
        """
        init = parse_ride_init(data)
        if actor.role != ActorRole.PASSENGER or actor.user_id != init.passenger_id:
            raise Forbidden("Rides can only be requested by the passenger themself")
        if init.driver_id == init.passenger_id:
            raise ValidationError("Passenger and driver must be different users")

        init = await self._with_pickup_address(init)

        async with self._admission_lock:
            await self._check_driver_dispatchable(init.driver_id)

            # the store enforces the same rule atomically across processes
            active = await self.store.query(
                lambda ride: ride.passenger_id == init.passenger_id
                or ride.driver_id == init.driver_id,
                statuses=ACTIVE_STATUSES,
                party_ids=[init.passenger_id, init.driver_id],
            )
            for ride in active:
                if ride.passenger_id == init.passenger_id:
                    raise Conflict(PASSENGER_BUSY_MESSAGE, ride_id=ride.id)
                raise Conflict(DRIVER_BUSY_MESSAGE)

            ride_id = await self.store.create(init)

        logger.info(
            f"Ride {ride_id} requested by passenger {init.passenger_id} for driver {init.driver_id}"
        )
        return await self.store.get(ride_id)

    async def accept(
        self,
        ride_id: str,
        actor: Actor,
        driver_location: Optional[Coordinate] = None,
    ) -> RideRequest:
        """Driver accepts; computes the driver → pickup leg before committing"""
        async with self._lock_for(ride_id):
            ride = await self.store.get(ride_id)
            self._require_driver(ride, actor, "accept")
            if ride.status == RideStatus.ACCEPTED:
                logger.info(f"Duplicate accept for ride {ride_id} ignored")
                return ride
            self._require_status(ride, RideStatus.PENDING, "accept")

            origin = (
                _plain(driver_location)
                if driver_location is not None
                else await self._driver_location(ride.driver_id)
            )
            route = await self.estimator.compute_route(origin, ride.pickup)

            ride = await self.store.update(
                ride_id,
                {
                    "status": RideStatus.ACCEPTED,
                    "accepted_at": self._stamp(ride),
                    "route_coordinates": route.coordinates,
                    "driver_location": origin,
                    "distance": route.distance_text,
                    "duration": route.duration_text,
                    "distance_km": route.distance_km,
                    "duration_minutes": route.duration_minutes,
                },
                expected_status=RideStatus.PENDING,
            )
            logger.info(
                f"Ride {ride_id} accepted by driver {actor.user_id}, pickup in {route.distance_text}"
            )
            await self._start_feed(ride, RideStatus.ACCEPTED)
            return ride

    async def reject(self, ride_id: str, actor: Actor) -> RideRequest:
        async with self._lock_for(ride_id):
            ride = await self.store.get(ride_id)
            self._require_driver(ride, actor, "reject")
            if ride.status == RideStatus.REJECTED:
                return ride
            self._require_status(ride, RideStatus.PENDING, "reject")

            ride = await self.store.update(
                ride_id,
                {"status": RideStatus.REJECTED},
                expected_status=RideStatus.PENDING,
            )
            logger.info(f"Ride {ride_id} rejected by driver {actor.user_id}")
            return ride

    async def confirm_boarding(self, ride_id: str, actor: Actor) -> RideRequest:
        async with self._lock_for(ride_id):
            ride = await self.store.get(ride_id)
            self._require_passenger(ride, actor, "confirm boarding for")
            if ride.passenger_boarded:
                return ride
            self._require_status(ride, RideStatus.ACCEPTED, "confirm boarding for")

            ride = await self.store.update(
                ride_id,
                {"passenger_boarded": True, "passenger_boarded_at": utcnow()},
                expected_status=RideStatus.ACCEPTED,
            )
            logger.info(f"Passenger boarded ride {ride_id}")
            return ride

    async def start(self, ride_id: str, actor: Actor) -> RideRequest:
        """Driver starts the trip; computes pickup → destination and the fare"""
        async with self._lock_for(ride_id):
            ride = await self.store.get(ride_id)
            self._require_driver(ride, actor, "start")
            if ride.status == RideStatus.IN_PROGRESS:
                logger.info(f"Duplicate start for ride {ride_id} ignored")
                return ride
            self._require_status(ride, RideStatus.ACCEPTED, "start")
            if not ride.passenger_boarded:
                raise PreconditionFailed(
                    "The passenger has not confirmed boarding yet", ride_id=ride_id
                )

            route = await self.estimator.compute_route(ride.pickup, ride.destination)
            fare = self.estimator.compute_fare(route.distance_km)

            if self.simulator is not None:
                await self.simulator.stop(ride_id)

            ride = await self.store.update(
                ride_id,
                {
                    "status": RideStatus.IN_PROGRESS,
                    "started_at": self._stamp(ride),
                    "route_coordinates": route.coordinates,
                    "driver_location": _plain(ride.pickup),
                    "distance": route.distance_text,
                    "duration": route.duration_text,
                    "distance_km": route.distance_km,
                    "duration_minutes": route.duration_minutes,
                    "fare": fare,
                },
                expected_status=RideStatus.ACCEPTED,
            )
            logger.info(
                f"Ride {ride_id} started: {route.distance_text}, {route.duration_text}, fare {fare}"
            )
            await self._start_feed(ride, RideStatus.IN_PROGRESS, self._arrive_from_feed)
            return ride

    async def arrive(self, ride_id: str, actor: Actor) -> RideRequest:
        """Mark arrival and start the completion grace timer"""
        async with self._lock_for(ride_id):
            ride = await self.store.get(ride_id)
            if actor.role != ActorRole.SYSTEM:
                self._require_driver(ride, actor, "mark arrival for")
            if ride.status == RideStatus.ARRIVED:
                return ride
            self._require_status(ride, RideStatus.IN_PROGRESS, "mark arrival for")

            if self.simulator is not None:
                await self.simulator.stop(ride_id)

            ride = await self.store.update(
                ride_id,
                {"status": RideStatus.ARRIVED, "arrived_at": self._stamp(ride)},
                expected_status=RideStatus.IN_PROGRESS,
            )
            logger.info(f"Ride {ride_id} arrived, completing in {self.completion_grace_seconds}s")
            self._schedule_completion(ride_id, self.completion_grace_seconds)
            return ride

    async def cancel(
        self, ride_id: str, actor: Actor, reason: Optional[str] = None
    ) -> RideRequest:
        """
        Cancel from any non-terminal status, arrived included (the pending
        completion is dropped). Admin and system cancels are recorded as system.
        """
        async with self._lock_for(ride_id):
            ride = await self.store.get(ride_id)
            if actor.role in (ActorRole.SYSTEM, ActorRole.ADMIN):
                cancelled_by = ActorRole.SYSTEM
            elif actor.user_id == ride.passenger_id and actor.role == ActorRole.PASSENGER:
                cancelled_by = ActorRole.PASSENGER
            elif actor.user_id == ride.driver_id and actor.role == ActorRole.DRIVER:
                cancelled_by = ActorRole.DRIVER
            else:
                raise Forbidden("You are not a party to this ride", ride_id=ride_id)

            if ride.status == RideStatus.CANCELLED:
                return ride
            if ride.is_terminal:
                logger.warning(f"Cancel refused for ride {ride_id} ({ride.status.value})")
                raise InvalidTransition(ride_id, ride.status.value, "cancel")

            if self.simulator is not None:
                await self.simulator.stop(ride_id)

            ride = await self.store.update(
                ride_id,
                {
                    "status": RideStatus.CANCELLED,
                    "cancelled_at": self._stamp(ride),
                    "cancelled_by": cancelled_by,
                    "cancel_reason": reason,
                },
                expected_status=ride.status,
            )
            # a Conflict above leaves the completion timer in place
            self._cancel_completion(ride_id)
            logger.info(f"Ride {ride_id} cancelled by {cancelled_by.value}: {reason or '-'}")
            return ride

    async def rate(
        self,
        ride_id: str,
        actor: Actor,
        rating: int,
        comment: Optional[str] = None,
    ) -> RideRequest:
        if not 1 <= rating <= 5:
            raise ValidationError("Rating must be between 1 and 5", ride_id=ride_id)

        async with self._lock_for(ride_id):
            ride = await self.store.get(ride_id)
            self._require_passenger(ride, actor, "rate")
            if ride.status != RideStatus.COMPLETED:
                raise PreconditionFailed(
                    "Rides can only be rated after they are completed", ride_id=ride_id
                )
            if ride.rating is not None:
                if ride.rating == rating and ride.comment == comment:
                    return ride
                raise Conflict("This ride has already been rated", ride_id=ride_id)

            return await self.store.update(
                ride_id,
                {"rating": rating, "comment": comment, "rated_at": utcnow()},
                expected_status=RideStatus.COMPLETED,
            )

    async def update_driver_location(
        self, ride_id: str, actor: Actor, location: Coordinate
    ) -> RideRequest:
        """Real GPS push from the assigned driver; takes the feed over from the simulator"""
        async with self._lock_for(ride_id):
            ride = await self.store.get(ride_id)
            self._require_driver(ride, actor, "report a location for")
            if ride.status not in (RideStatus.ACCEPTED, RideStatus.IN_PROGRESS):
                raise InvalidTransition(ride_id, ride.status.value, "report a location for")

            if self.simulator is not None and self.simulator.is_running(ride_id):
                logger.info(f"Driver GPS took over position feed of ride {ride_id}")
                await self.simulator.stop(ride_id)

            return await self.store.update(
                ride_id,
                {"driver_location": _plain(location)},
                expected_status=ride.status,
            )

    # -------------------------------------------------------------------------
    # Completion timer
    # -------------------------------------------------------------------------

    def _schedule_completion(self, ride_id: str, delay: float) -> None:
        self._cancel_completion(ride_id)
        self._completion_timers[ride_id] = asyncio.create_task(
            self._complete_after(ride_id, delay), name=f"complete-{ride_id}"
        )

    def _cancel_completion(self, ride_id: str) -> None:
        task = self._completion_timers.pop(ride_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def has_pending_completion(self, ride_id: str) -> bool:
        task = self._completion_timers.get(ride_id)
        return task is not None and not task.done()

    async def _complete_after(self, ride_id: str, delay: float) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            if self.settlement_hook is not None:
                await self._run_settlement(ride_id)
            remaining = delay - (loop.time() - started)
            if remaining > 0:
                await asyncio.sleep(remaining)
            await self._complete(ride_id)
        except RideError as e:
            logger.warning(f"Completion of ride {ride_id} skipped: {e.message}")
        except Exception as e:
            # the ride stays arrived until recover() reschedules it
            logger.error(
                f"Completion of ride {ride_id} failed: {type(e).__name__}: {str(e)}",
                exc_info=True,
            )
        finally:
            if self._completion_timers.get(ride_id) is asyncio.current_task():
                del self._completion_timers[ride_id]

    async def _run_settlement(self, ride_id: str) -> None:
        ride = await self.store.get(ride_id)
        try:
            await self.settlement_hook(ride)
        except Exception as e:
            logger.error(
                f"Settlement for ride {ride_id} failed: {type(e).__name__}: {str(e)}",
                exc_info=True,
            )

    async def _complete(self, ride_id: str) -> RideRequest:
        async with self._lock_for(ride_id):
            ride = await self.store.get(ride_id)
            if ride.status != RideStatus.ARRIVED:
                raise InvalidTransition(ride_id, ride.status.value, "complete")
            ride = await self.store.update(
                ride_id,
                {"status": RideStatus.COMPLETED, "completed_at": self._stamp(ride)},
                expected_status=RideStatus.ARRIVED,
            )
            logger.info(f"Ride {ride_id} completed, fare {ride.fare}")
            return ride

    # -------------------------------------------------------------------------
    # Position feed
    # -------------------------------------------------------------------------

    async def _start_feed(
        self,
        ride: RideRequest,
        leg_status: RideStatus,
        on_exhausted: Optional[Callable[[str], Awaitable[None]]] = None,
    ) -> None:
        if self.simulator is None or not ride.route_coordinates:
            return

        async def on_position(ride_id: str, position: Coordinate) -> bool:
            try:
                await self.store.update(
                    ride_id, {"driver_location": position}, expected_status=leg_status
                )
            except (Conflict, NotFound) as e:
                logger.info(f"Position feed for ride {ride_id} stopped: {e.message}")
                return False
            return True

        await self.simulator.start(ride.id, ride.route_coordinates, on_position, on_exhausted)

    async def _arrive_from_feed(self, ride_id: str) -> None:
        try:
            await self.arrive(ride_id, Actor.system())
        except RideError as e:
            logger.info(f"Feed finished but ride {ride_id} not marked arrived: {e.message}")

    # -------------------------------------------------------------------------
    # Collaborators
    # -------------------------------------------------------------------------

    async def _check_driver_dispatchable(self, driver_id: str) -> None:
        if self.users is None:
            return
        driver = await self.users.get_user(driver_id)
        if driver is None or driver.role != "driver":
            raise PreconditionFailed("The selected driver does not exist")
        if driver.is_dispatchable:
            return
        if not driver.is_online:
            raise PreconditionFailed("The selected driver is offline")
        raise PreconditionFailed("The selected driver has not completed their profile")

    async def _driver_location(self, driver_id: str) -> Coordinate:
        if self.users is not None:
            driver = await self.users.get_user(driver_id)
            if driver is not None and driver.location is not None:
                return driver.location
        raise PreconditionFailed(
            "Driver location is unknown; send the current location with the request"
        )

    async def _with_pickup_address(self, init: RideRequestInit) -> RideRequestInit:
        if self.geocoder is None or init.pickup.address:
            return init
        address = await self.geocoder.reverse_geocode(init.pickup)
        if not address:
            return init
        return init.model_copy(
            update={"pickup": init.pickup.model_copy(update={"address": address})}
        )

    # -------------------------------------------------------------------------
    # Process lifecycle
    # -------------------------------------------------------------------------

    async def recover(self) -> int:
        """Reschedule completion of rides left in arrived by a previous process"""
        rides = await self.store.query(statuses=[RideStatus.ARRIVED])
        now = utcnow()
        for ride in rides:
            elapsed = (
                (now - ride.arrived_at).total_seconds()
                if ride.arrived_at
                else self.completion_grace_seconds
            )
            self._schedule_completion(
                ride.id, max(0.0, self.completion_grace_seconds - elapsed)
            )
        if rides:
            logger.info(f"Rescheduled completion for {len(rides)} arrived ride(s)")
        return len(rides)

    async def shutdown(self) -> None:
        if self.simulator is not None:
            await self.simulator.stop_all()
        timers = list(self._completion_timers.values())
        self._completion_timers.clear()
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        logger.info("Dispatch engine stopped")
