"""
Simulated vehicle movement
Stands in for driver GPS telemetry by walking a route one point per tick.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Sequence

from ridecore.models.ride_schema import Coordinate

logger = logging.getLogger(__name__)


async def simulate_position_feed(
    route: Sequence[Coordinate], tick_interval_ms: int
) -> AsyncIterator[Coordinate]:
    """
    Yield route[0] immediately, then the next point every tick until the route
    is exhausted. The wait happens only while the consumer is pulling, so a
    consumer that stops iterating leaves no timer behind.
    """
    interval = tick_interval_ms / 1000
    for index, position in enumerate(route):
        if index:
            await asyncio.sleep(interval)
        yield position


PositionCallback = Callable[[str, Coordinate], Awaitable[bool]]
ExhaustedCallback = Callable[[str], Awaitable[None]]


class PositionSimulator:
    """
    Owns at most one position feed task per ride.

    on_position returns False to stop the feed (e.g. the ride left the leg's
    status); on_exhausted runs once the last point has been delivered.
    """

    def __init__(self, tick_interval_ms: int = 1000):
        self.tick_interval_ms = tick_interval_ms
        self._tasks: Dict[str, asyncio.Task] = {}

    def is_running(self, ride_id: str) -> bool:
        task = self._tasks.get(ride_id)
        return task is not None and not task.done()

    async def start(
        self,
        ride_id: str,
        route: Sequence[Coordinate],
        on_position: PositionCallback,
        on_exhausted: Optional[ExhaustedCallback] = None,
    ) -> None:
        await self.stop(ride_id)
        self._tasks[ride_id] = asyncio.create_task(
            self._run(ride_id, list(route), on_position, on_exhausted),
            name=f"position-feed-{ride_id}",
        )
        logger.info(f"Position simulation started for ride {ride_id} ({len(route)} points)")

    async def _run(
        self,
        ride_id: str,
        route: Sequence[Coordinate],
        on_position: PositionCallback,
        on_exhausted: Optional[ExhaustedCallback],
    ) -> None:
        feed = simulate_position_feed(route, self.tick_interval_ms)
        exhausted = True
        try:
            async for position in feed:
                if not await on_position(ride_id, position):
                    exhausted = False
                    break
        finally:
            await feed.aclose()
            if self._tasks.get(ride_id) is asyncio.current_task():
                del self._tasks[ride_id]

        if exhausted and on_exhausted is not None:
            await on_exhausted(ride_id)

    async def stop(self, ride_id: str) -> None:
        task = self._tasks.pop(ride_id, None)
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Position feed for ride {ride_id} failed: {type(e).__name__}: {str(e)}")
        logger.info(f"Position simulation stopped for ride {ride_id}")

    async def stop_all(self) -> None:
        for ride_id in list(self._tasks):
            await self.stop(ride_id)
