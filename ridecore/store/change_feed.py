"""
In-process change feed
Fan-out of committed ride snapshots to live subscriptions (subscribe-by-filter).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set

from ridecore.models.ride_schema import RideRequest

logger = logging.getLogger(__name__)

Predicate = Callable[[RideRequest], bool]
Loader = Callable[[], Awaitable[List[RideRequest]]]

_CLOSED = object()


@dataclass
class QuerySnapshot:
    """Current result set of a subscription; changed is None for the initial one"""

    rides: List[RideRequest]
    changed: Optional[RideRequest] = None


class Subscription:
    """
    Live, unbounded stream of QuerySnapshot for one predicate.

    The first item is the initial result set; every later item follows a
    change to a record that matches, or used to match, the predicate.
    Close it (or leave its async with block) to stop receiving.
    """

    def __init__(self, feed: "ChangeFeed", predicate: Predicate, loader: Loader):
        self._feed = feed
        self._predicate = predicate
        self._loader = loader
        self._queue: asyncio.Queue = asyncio.Queue()
        self._current: Dict[str, RideRequest] = {}
        self._versions: Dict[str, int] = {}
        self._initial_sent = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, ride: RideRequest) -> None:
        if not self._closed:
            self._queue.put_nowait(ride)

    def _is_stale(self, ride: RideRequest) -> bool:
        seen = self._versions.get(ride.id)
        return seen is not None and ride.version <= seen

    def _snapshot(self, changed: Optional[RideRequest] = None) -> QuerySnapshot:
        rides = sorted(self._current.values(), key=lambda r: r.created_at)
        return QuerySnapshot(rides=rides, changed=changed)

    def __aiter__(self):
        return self

    async def __anext__(self) -> QuerySnapshot:
        if self._closed:
            raise StopAsyncIteration

        if not self._initial_sent:
            self._initial_sent = True
            for ride in await self._loader():
                self._current[ride.id] = ride
                self._versions[ride.id] = ride.version
            return self._snapshot()

        while True:
            ride = await self._queue.get()
            if ride is _CLOSED:
                raise StopAsyncIteration
            # published before the initial load picked up a newer version
            if self._is_stale(ride):
                continue
            self._versions[ride.id] = ride.version

            if self._predicate(ride):
                self._current[ride.id] = ride
            elif ride.id in self._current:
                del self._current[ride.id]
            else:
                continue
            return self._snapshot(changed=ride)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._feed._discard(self)
        self._queue.put_nowait(_CLOSED)

    async def aclose(self) -> None:
        self.close()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class ChangeFeed:
    def __init__(self):
        self._subscriptions: Set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, predicate: Predicate, loader: Loader) -> Subscription:
        # registered before the initial load so no commit falls in between
        subscription = Subscription(self, predicate, loader)
        self._subscriptions.add(subscription)
        return subscription

    def publish(self, ride: RideRequest) -> None:
        for subscription in list(self._subscriptions):
            subscription._deliver(ride)

    def _discard(self, subscription: Subscription) -> None:
        self._subscriptions.discard(subscription)

    def close_all(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.close()
        logger.info("Change feed closed all subscriptions")
