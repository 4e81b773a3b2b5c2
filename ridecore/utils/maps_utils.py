"""
Google Maps Integration Utilities
Routing providers (driving route geometry, distance, duration) and reverse geocoding
"""

import logging
from typing import List, Optional

import httpx
from pydantic import BaseModel

from ridecore.errors import ProviderError
from ridecore.models.ride_schema import Coordinate
from ridecore.utils.helpers import (
    calculate_distance,
    calculate_eta,
    format_distance,
    format_duration,
)
from ridecore.utils.polyline import decode_polyline

logger = logging.getLogger(__name__)

ROUTES_URL = "https://routes.googleapis.com/directions/v2:computeRoutes"
GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
CITY_SPEED_KMH = 30.0


class RouteEstimate(BaseModel):
    """Driving route for one leg"""

    coordinates: List[Coordinate]
    distance_km: float
    duration_minutes: float

    @property
    def distance_text(self) -> str:
        return format_distance(self.distance_km)

    @property
    def duration_text(self) -> str:
        return format_duration(self.duration_minutes)


class RouteProvider:
    """Computes a driving route between two coordinates"""

    async def compute_route(
        self, origin: Coordinate, destination: Coordinate
    ) -> RouteEstimate:
        raise NotImplementedError

    async def aclose(self) -> None:
        pass


class GoogleRoutesProvider(RouteProvider):
    """Google Routes API (computeRoutes, DRIVE)"""

    def __init__(
        self,
        api_key: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ValueError("GOOGLE_MAPS_API_KEY is required for the Google provider")
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    async def _post(self, payload: dict, headers: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(
                ROUTES_URL, json=payload, headers=headers, timeout=self.timeout
            )
        async with httpx.AsyncClient() as client:
            return await client.post(
                ROUTES_URL, json=payload, headers=headers, timeout=self.timeout
            )

    async def compute_route(
        self, origin: Coordinate, destination: Coordinate
    ) -> RouteEstimate:
        payload = {
            "origin": {
                "location": {
                    "latLng": {
                        "latitude": origin.latitude,
                        "longitude": origin.longitude,
                    }
                }
            },
            "destination": {
                "location": {
                    "latLng": {
                        "latitude": destination.latitude,
                        "longitude": destination.longitude,
                    }
                }
            },
            "travelMode": "DRIVE",
        }

        headers = {
            "Content-Type": "application/json",
            "X-Goog-Api-Key": self.api_key,
            "X-Goog-FieldMask": "routes.duration,routes.distanceMeters,routes.polyline.encodedPolyline",
        }

        try:
            response = await self._post(payload, headers)
        except httpx.HTTPError as e:
            logger.warning(f"Routes API request failed: {type(e).__name__}: {str(e)}")
            raise ProviderError(
                "Routing service is unreachable, please try again"
            ) from e

        if response.status_code == 429:
            logger.warning("Routes API rate limit hit")
            raise ProviderError("Routing service is busy, please try again shortly")

        if response.status_code != 200:
            logger.warning(
                f"Routes API returned {response.status_code}: {response.text}"
            )
            raise ProviderError(
                f"Routing service returned an error ({response.status_code})",
                retryable=response.status_code >= 500,
            )

        data = response.json()
        if not data or "routes" not in data or not data["routes"]:
            logger.warning(
                f"Routes API returned no routes for {origin.as_tuple()} -> {destination.as_tuple()}"
            )
            raise ProviderError("No driving route found between these points", retryable=False)

        route = data["routes"][0]
        encoded = route.get("polyline", {}).get("encodedPolyline")
        if not encoded:
            logger.warning("No polyline found in Routes API response")
            raise ProviderError("Routing service returned a route without geometry", retryable=False)

        try:
            coordinates = decode_polyline(encoded)
        except ValueError as e:
            raise ProviderError(
                "Routing service returned an unreadable route", retryable=False
            ) from e

        # Duration format: "123s"
        duration_str = route.get("duration", "0s")
        duration_seconds = (
            float(duration_str.rstrip("s")) if isinstance(duration_str, str) else 0.0
        )

        return RouteEstimate(
            coordinates=coordinates,
            distance_km=round(route.get("distanceMeters", 0) / 1000, 2),
            duration_minutes=round(duration_seconds / 60, 1),
        )


class StraightLineRouteProvider(RouteProvider):
    """
    Offline provider for development and tests: great-circle distance, evenly
    interpolated waypoints and an assumed city speed.
    """

    def __init__(self, steps: int = 10, avg_speed_kmh: float = CITY_SPEED_KMH):
        if steps < 1:
            raise ValueError("steps must be at least 1")
        self.steps = steps
        self.avg_speed_kmh = avg_speed_kmh

    async def compute_route(
        self, origin: Coordinate, destination: Coordinate
    ) -> RouteEstimate:
        distance_km = calculate_distance(
            origin.latitude, origin.longitude, destination.latitude, destination.longitude
        )
        coordinates = [
            Coordinate(
                latitude=origin.latitude
                + (destination.latitude - origin.latitude) * i / self.steps,
                longitude=origin.longitude
                + (destination.longitude - origin.longitude) * i / self.steps,
            )
            for i in range(self.steps + 1)
        ]
        return RouteEstimate(
            coordinates=coordinates,
            distance_km=round(distance_km, 2),
            duration_minutes=round(calculate_eta(distance_km, self.avg_speed_kmh), 1),
        )


class GoogleReverseGeocoder:
    """Coordinate -> formatted address. Display only, so failures return None"""

    def __init__(
        self,
        api_key: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    async def _get(self, params: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(GEOCODE_URL, params=params, timeout=self.timeout)
        async with httpx.AsyncClient() as client:
            return await client.get(GEOCODE_URL, params=params, timeout=self.timeout)

    async def reverse_geocode(self, location: Coordinate) -> Optional[str]:
        if not self.api_key:
            return None

        params = {
            "latlng": f"{location.latitude},{location.longitude}",
            "key": self.api_key,
        }
        try:
            response = await self._get(params)
        except httpx.HTTPError as e:
            logger.warning(f"Reverse geocoding failed: {str(e)}")
            return None

        if response.status_code != 200:
            logger.warning(f"Geocoding API returned {response.status_code}")
            return None

        data = response.json()
        if data.get("status") != "OK" or not data.get("results"):
            logger.warning(f"Geocoding status: {data.get('status')}")
            return None

        return data["results"][0].get("formatted_address")
