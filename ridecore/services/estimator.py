"""
Trip Metrics Estimator
Route computation with retry/backoff on top of a RouteProvider, plus fare pricing
"""

import asyncio
import logging

from ridecore.errors import ProviderError
from ridecore.models.ride_schema import Coordinate
from ridecore.utils.helpers import round_half_up
from ridecore.utils.maps_utils import RouteEstimate, RouteProvider

logger = logging.getLogger(__name__)

RATE_PER_KM = 5


def compute_fare(distance_km: float, rate_per_km: float = RATE_PER_KM) -> int:
    """
    Flat distance-based fare: round(distance_km * rate_per_km)

    Raises:
        ValueError: for a negative distance
    """
    if distance_km < 0:
        raise ValueError(f"distance_km must not be negative, got {distance_km}")
    return round_half_up(distance_km * rate_per_km)


class TripEstimator:
    def __init__(
        self,
        provider: RouteProvider,
        rate_per_km: float = RATE_PER_KM,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.provider = provider
        self.rate_per_km = rate_per_km
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    async def compute_route(
        self, origin: Coordinate, destination: Coordinate
    ) -> RouteEstimate:
        """
        Get a driving route, retrying transient provider failures with
        exponential backoff.

        Raises:
            ProviderError: when the provider fails permanently or retries run out
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                route = await self.provider.compute_route(origin, destination)
            except ProviderError as e:
                if not e.retryable or attempt >= self.max_attempts:
                    logger.error(
                        f"Route computation failed after {attempt} attempt(s): {e.message}"
                    )
                    raise
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    f"Route attempt {attempt}/{self.max_attempts} failed ({e.message}), retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                continue

            if not route.coordinates:
                raise ProviderError(
                    "Routing service returned an empty route", retryable=False
                )
            return route

    def compute_fare(self, distance_km: float) -> int:
        return compute_fare(distance_km, self.rate_per_km)

    async def aclose(self) -> None:
        await self.provider.aclose()
