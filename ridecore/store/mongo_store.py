"""
MongoDB RideStore (mongoengine)
Blocking driver calls run in the threadpool; updates are compare-and-set on the
document version so concurrent writers never overwrite each other.

Writes made through this store are published to its subscribers at once.
Writes made by other processes reach them through the change relay: a MongoDB
change stream, or polling on updatedAt where the server has no change streams
(standalone mongod).
"""

import asyncio
import logging
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from fastapi.concurrency import run_in_threadpool
from mongoengine import Q
from mongoengine.errors import NotUniqueError
from mongoengine.errors import ValidationError as MongoValidationError
from pydantic import BaseModel
from pymongo.errors import PyMongoError

from ridecore.errors import Conflict, NotFound, ValidationError
from ridecore.models.ride_model import GeoPoint, Ride, RideSlot
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

MAX_CAS_ATTEMPTS = 5

RELAY_MODES = ("change_stream", "poll", "off")
STREAM_AWAIT_MS = 1000
# writers stamp updatedAt with their own clock; re-read this far back
POLL_LOOKBACK = timedelta(seconds=5)
# a slot whose ride never got inserted is abandoned after this long
SLOT_CLAIM_TIMEOUT = timedelta(seconds=30)

ACTIVE_VALUES = frozenset(status.value for status in ACTIVE_STATUSES)


def _to_mongo_value(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return GeoPoint(**value.model_dump())
    if isinstance(value, list):
        return [_to_mongo_value(item) for item in value]
    if isinstance(value, Enum):
        return value.value
    return value


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _naive_utc(value: datetime) -> datetime:
    # BSON dates are UTC; a naive bound compares the same on every client
    return _as_utc(value).replace(tzinfo=None)


class MongoRideStore(RideStore):
    """Requires an open mongoengine connection (see database.connect_db)"""

    def __init__(self, relay: str = "change_stream", poll_interval_seconds: float = 1.0):
        super().__init__()
        if relay not in RELAY_MODES:
            raise ValueError(f"Unknown change relay {relay!r}, expected one of {RELAY_MODES}")
        self.relay = relay
        self.poll_interval_seconds = poll_interval_seconds
        self._relay_task: Optional[asyncio.Task] = None
        self._relay_stop = threading.Event()

    # -------------------------------------------------------------------------
    # Participant slots
    # -------------------------------------------------------------------------

    def _holder_is_active(self, holder: Dict[str, Any], now: datetime) -> bool:
        raw = self._find_raw(holder["rideId"])
        if raw is None:
            # claimed by a create that has not inserted its ride yet, or never will
            return now - _as_utc(holder["claimedAt"]) < SLOT_CLAIM_TIMEOUT
        return raw.get("status", RideStatus.PENDING.value) in ACTIVE_VALUES

    def _claim_slot(self, key: str, ride_id: str, now: datetime, message: str) -> None:
        """Take the slot for ride_id or raise Conflict(message)"""
        for _ in range(2):
            try:
                RideSlot(id=key, ride_id=ride_id, claimed_at=now).save(force_insert=True)
                return
            except NotUniqueError:
                pass

            holder = RideSlot.objects(pk=key).as_pymongo().first()
            if holder is None:
                # released in the meantime
                continue
            if self._holder_is_active(holder, now):
                raise Conflict(message, ride_id=holder["rideId"])

            taken = RideSlot.objects(pk=key, ride_id=holder["rideId"]).update_one(
                set__ride_id=ride_id, set__claimed_at=now
            )
            if taken:
                logger.info(f"Slot {key} reclaimed from finished ride {holder['rideId']}")
                return
        raise Conflict(message)

    def _release_slots(self, ride_id: str) -> None:
        RideSlot.objects(ride_id=ride_id).delete()

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    def _find_raw(self, ride_id: str) -> Optional[Dict[str, Any]]:
        return Ride.objects(pk=ride_id).as_pymongo().first()

    def _create_sync(self, init) -> str:
        now = utcnow()
        ride = Ride(
            passenger_id=init.passenger_id,
            driver_id=init.driver_id,
            status=RideStatus.PENDING.value,
            pickup=GeoPoint(**init.pickup.model_dump()),
            destination=GeoPoint(**init.destination.model_dump()),
            created_at=now,
            updated_at=now,
            version=0,
        )
        try:
            ride.validate()
        except MongoValidationError as e:
            raise ValidationError(f"Ride request rejected by the store: {str(e)}") from e

        self._claim_slot(f"passenger:{init.passenger_id}", ride.id, now, PASSENGER_BUSY_MESSAGE)
        try:
            self._claim_slot(f"driver:{init.driver_id}", ride.id, now, DRIVER_BUSY_MESSAGE)
            ride.save(force_insert=True)
        except Exception:
            self._release_slots(ride.id)
            raise
        return ride.id

    async def create(self, init) -> str:
        init = parse_ride_init(init)
        ride_id = await run_in_threadpool(self._create_sync, init)
        logger.info(f"Ride {ride_id} created for passenger {init.passenger_id}")
        self._feed.publish(await self.get(ride_id))
        return ride_id

    async def get(self, ride_id: str) -> RideRequest:
        raw = await run_in_threadpool(self._find_raw, ride_id)
        if raw is None:
            raise NotFound(ride_id)
        return normalize_ride_document(raw)

    def _update_sync(
        self,
        ride_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[RideStatus],
        expected_version: Optional[int],
    ) -> RideRequest:
        for attempt in range(MAX_CAS_ATTEMPTS):
            raw = self._find_raw(ride_id)
            if raw is None:
                raise NotFound(ride_id)
            current = normalize_ride_document(raw)
            check_expectations(current, expected_status, expected_version)
            updated = apply_update(current, fields, utcnow())

            changes = {
                f"set__{name}": _to_mongo_value(getattr(updated, name))
                for name in fields
            }
            changes["set__updated_at"] = updated.updated_at
            changes["set__version"] = updated.version

            # raw version is None for documents written before versioning
            written = Ride.objects(pk=ride_id, version=raw.get("version")).update_one(
                **changes
            )
            if written:
                if updated.is_terminal and not current.is_terminal:
                    self._release_slots(ride_id)
                return updated
            logger.debug(f"Version race on ride {ride_id}, attempt {attempt + 1}")

        raise Conflict(
            "Ride is being changed by several clients at once, please retry",
            ride_id=ride_id,
        )

    async def update(
        self,
        ride_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[RideStatus] = None,
        expected_version: Optional[int] = None,
    ) -> RideRequest:
        updated = await run_in_threadpool(
            self._update_sync, ride_id, fields, expected_status, expected_version
        )
        self._feed.publish(updated)
        return updated

    def _query_sync(
        self,
        statuses: Optional[List[str]],
        ride_id: Optional[str],
        driver_id: Optional[str],
        party_ids: Optional[List[str]],
        limit: Optional[int],
        newest_first: bool,
    ) -> List[Dict[str, Any]]:
        queryset = Ride.objects
        if ride_id is not None:
            queryset = queryset(pk=ride_id)
        if statuses is not None:
            queryset = queryset(status__in=statuses)
        if driver_id is not None:
            queryset = queryset(driver_id=driver_id)
        if party_ids is not None:
            queryset = queryset(Q(passenger_id__in=party_ids) | Q(driver_id__in=party_ids))
        queryset = queryset.order_by("-created_at" if newest_first else "created_at")
        if limit is not None:
            queryset = queryset.limit(limit)
        return list(queryset.as_pymongo())

    def _normalize_or_skip(self, raw: Dict[str, Any]) -> Optional[RideRequest]:
        try:
            return normalize_ride_document(raw)
        except ValidationError as e:
            logger.warning(f"Skipping unreadable ride document: {e.message}")
            return None

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
        wanted = [RideStatus(s).value for s in statuses] if statuses is not None else None
        parties = list(party_ids) if party_ids is not None else None
        documents = await run_in_threadpool(
            self._query_sync,
            wanted,
            ride_id,
            driver_id,
            parties,
            # the predicate runs here, so the database cannot cut the list short
            limit if predicate is None else None,
            newest_first,
        )

        rides = []
        for raw in documents:
            ride = self._normalize_or_skip(raw)
            if ride is not None and (predicate is None or predicate(ride)):
                rides.append(ride)
        rides.sort(key=lambda r: r.created_at, reverse=newest_first)
        return rides[:limit] if limit is not None else rides

    # -------------------------------------------------------------------------
    # Change relay
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self.relay == "off" or self._relay_task is not None:
            return
        self._relay_stop.clear()
        self._relay_task = asyncio.create_task(self._run_relay(), name="ride-change-relay")

    async def _run_relay(self) -> None:
        if self.relay == "change_stream":
            try:
                await run_in_threadpool(self._stream_changes, asyncio.get_running_loop())
                return
            except PyMongoError as e:
                logger.warning(
                    f"Ride change stream unavailable ({type(e).__name__}: {str(e)}), "
                    f"polling every {self.poll_interval_seconds}s instead"
                )
        await self._poll_changes()

    def _stream_changes(self, loop: asyncio.AbstractEventLoop) -> None:
        with Ride._get_collection().watch(
            full_document="updateLookup", max_await_time_ms=STREAM_AWAIT_MS
        ) as stream:
            logger.info("Relaying ride changes from the MongoDB change stream")
            while not self._relay_stop.is_set():
                change = stream.try_next()
                if change is not None:
                    loop.call_soon_threadsafe(self._relay_change, change)

    def _relay_change(self, change: Dict[str, Any]) -> None:
        document = change.get("fullDocument")
        if document is None:
            # deletes carry no document; rides are never deleted by the core
            return
        ride = self._normalize_or_skip(document)
        if ride is not None:
            self._feed.publish(ride)

    def _changed_since(self, since: datetime) -> List[Dict[str, Any]]:
        return list(
            Ride.objects(updated_at__gte=_naive_utc(since)).order_by("updated_at").as_pymongo()
        )

    async def _poll_changes(self) -> None:
        watermark = utcnow()
        logger.info("Relaying ride changes by polling updatedAt")
        while not self._relay_stop.is_set():
            await asyncio.sleep(self.poll_interval_seconds)
            try:
                documents = await run_in_threadpool(
                    self._changed_since, watermark - POLL_LOOKBACK
                )
            except PyMongoError as e:
                logger.error(f"Polling ride changes failed: {type(e).__name__}: {str(e)}")
                continue
            for raw in documents:
                ride = self._normalize_or_skip(raw)
                if ride is None:
                    continue
                # subscriptions drop versions they have already seen
                self._feed.publish(ride)
                if ride.updated_at is not None:
                    watermark = max(watermark, ride.updated_at)

    async def close(self) -> None:
        if self._relay_task is not None:
            self._relay_stop.set()
            self._relay_task.cancel()
            try:
                await self._relay_task
            except asyncio.CancelledError:
                pass
            self._relay_task = None
        await super().close()
