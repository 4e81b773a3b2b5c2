"""Tests for the trip metrics estimator, fare pricing and the Google providers."""

import json

import httpx
import pytest

from conftest import FakeRouteProvider
from ridecore.errors import ProviderError
from ridecore.models.ride_schema import Coordinate
from ridecore.services.estimator import TripEstimator, compute_fare
from ridecore.utils.helpers import (
    calculate_distance,
    format_distance,
    format_duration,
    parse_distance,
)
from ridecore.utils.maps_utils import (
    ROUTES_URL,
    GoogleReverseGeocoder,
    GoogleRoutesProvider,
    RouteEstimate,
    StraightLineRouteProvider,
)
from ridecore.utils.polyline import encode_polyline

ORIGIN = Coordinate(latitude=37.87, longitude=32.48)
DESTINATION = Coordinate(latitude=37.90, longitude=32.50)
ROUTE_POINTS = [(37.87, 32.48), (37.885, 32.49), (37.90, 32.50)]


def routes_body(distance_meters=5240, duration="754s", points=ROUTE_POINTS):
    return {
        "routes": [
            {
                "distanceMeters": distance_meters,
                "duration": duration,
                "polyline": {"encodedPolyline": encode_polyline(points)},
            }
        ]
    }


def google_provider(handler) -> GoogleRoutesProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoogleRoutesProvider("test-key", client=client)


# -----------------------------------------------------------------------------
# Fare
# -----------------------------------------------------------------------------


@pytest.mark.parametrize(
    "distance_km, expected",
    [(0, 0), (5.2, 26), (0.1, 1), (0.09, 0), (2.5, 13), (12.345, 62)],
)
def test_compute_fare(distance_km, expected):
    assert compute_fare(distance_km) == expected


def test_compute_fare_is_monotonic_and_deterministic():
    distances = [i * 0.037 for i in range(500)]
    fares = [compute_fare(d) for d in distances]

    assert fares == sorted(fares)
    assert fares == [compute_fare(d) for d in distances]


def test_compute_fare_rejects_negative_distance():
    with pytest.raises(ValueError):
        compute_fare(-1)


def test_estimator_uses_configured_rate():
    estimator = TripEstimator(FakeRouteProvider(), rate_per_km=7)
    assert estimator.compute_fare(3) == 21


def test_route_estimate_display_text():
    route = RouteEstimate(coordinates=[ORIGIN], distance_km=5.24, duration_minutes=12.6)

    assert route.distance_text == format_distance(5.24) == "5.2 km"
    assert route.duration_text == format_duration(12.6) == "13 dk"


@pytest.mark.parametrize(
    "text, expected",
    [("5.2 km", 5.2), ("5,2 km", 5.2), ("12km", 12.0), ("", 0.0), (None, 0.0), ("far", 0.0)],
)
def test_parse_distance(text, expected):
    assert parse_distance(text) == expected


# -----------------------------------------------------------------------------
# Google Routes provider
# -----------------------------------------------------------------------------


async def test_google_provider_parses_route():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=routes_body())

    route = await google_provider(handler).compute_route(ORIGIN, DESTINATION)

    assert seen["url"] == ROUTES_URL
    assert seen["headers"]["X-Goog-Api-Key"] == "test-key"
    assert "routes.polyline.encodedPolyline" in seen["headers"]["X-Goog-FieldMask"]
    assert seen["body"]["travelMode"] == "DRIVE"
    assert seen["body"]["origin"]["location"]["latLng"] == {"latitude": 37.87, "longitude": 32.48}

    assert route.distance_km == 5.24
    assert route.duration_minutes == 12.6
    assert [c.as_tuple() for c in route.coordinates] == [
        pytest.approx(p) for p in ROUTE_POINTS
    ]


def test_google_provider_requires_api_key():
    with pytest.raises(ValueError):
        GoogleRoutesProvider("")


@pytest.mark.parametrize(
    "response, retryable",
    [
        (httpx.Response(429, json={}), True),
        (httpx.Response(503, text="unavailable"), True),
        (httpx.Response(400, json={"error": "bad request"}), False),
        (httpx.Response(200, json={}), False),
        (httpx.Response(200, json={"routes": [{"distanceMeters": 10}]}), False),
        (
            httpx.Response(
                200, json={"routes": [{"polyline": {"encodedPolyline": "_p~iF"}}]}
            ),
            False,
        ),
    ],
)
async def test_google_provider_errors(response, retryable):
    provider = google_provider(lambda request: response)

    with pytest.raises(ProviderError) as exc_info:
        await provider.compute_route(ORIGIN, DESTINATION)

    assert exc_info.value.retryable is retryable


async def test_google_provider_network_failure_is_retryable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderError) as exc_info:
        await google_provider(handler).compute_route(ORIGIN, DESTINATION)

    assert exc_info.value.retryable is True
    assert exc_info.value.http_status == 503


# -----------------------------------------------------------------------------
# Retry policy
# -----------------------------------------------------------------------------


async def test_estimator_retries_transient_failures():
    provider = FakeRouteProvider()
    provider.fail_next(ProviderError("busy"), ProviderError("busy"))
    estimator = TripEstimator(provider, max_attempts=3, backoff_seconds=0)

    route = await estimator.compute_route(ORIGIN, DESTINATION)

    assert len(provider.calls) == 3
    assert route.distance_km == 5.2


async def test_estimator_gives_up_after_max_attempts():
    provider = FakeRouteProvider()
    provider.fail_next(*[ProviderError("busy") for _ in range(5)])
    estimator = TripEstimator(provider, max_attempts=2, backoff_seconds=0)

    with pytest.raises(ProviderError):
        await estimator.compute_route(ORIGIN, DESTINATION)
    assert len(provider.calls) == 2


async def test_estimator_does_not_retry_permanent_failures():
    provider = FakeRouteProvider()
    provider.fail_next(ProviderError("no route", retryable=False))
    estimator = TripEstimator(provider, max_attempts=3, backoff_seconds=0)

    with pytest.raises(ProviderError):
        await estimator.compute_route(ORIGIN, DESTINATION)
    assert len(provider.calls) == 1


async def test_estimator_rejects_empty_route():
    class EmptyProvider(FakeRouteProvider):
        async def compute_route(self, origin, destination):
            return RouteEstimate(coordinates=[], distance_km=0, duration_minutes=0)

    with pytest.raises(ProviderError) as exc_info:
        await TripEstimator(EmptyProvider()).compute_route(ORIGIN, DESTINATION)
    assert exc_info.value.retryable is False


# -----------------------------------------------------------------------------
# Offline provider and geocoder
# -----------------------------------------------------------------------------


async def test_straight_line_provider():
    route = await StraightLineRouteProvider(steps=4).compute_route(ORIGIN, DESTINATION)

    assert len(route.coordinates) == 5
    assert route.coordinates[0].as_tuple() == ORIGIN.as_tuple()
    assert route.coordinates[-1].as_tuple() == pytest.approx(DESTINATION.as_tuple())
    expected = calculate_distance(37.87, 32.48, 37.90, 32.50)
    assert route.distance_km == round(expected, 2)


async def test_reverse_geocoder_returns_formatted_address():
    def handler(request):
        assert request.url.params["latlng"] == "37.87,32.48"
        return httpx.Response(
            200,
            json={"status": "OK", "results": [{"formatted_address": "Meram, Konya"}]},
        )

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    geocoder = GoogleReverseGeocoder("test-key", client=client)

    assert await geocoder.reverse_geocode(ORIGIN) == "Meram, Konya"


async def test_reverse_geocoder_fails_soft():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    geocoder = GoogleReverseGeocoder("test-key", client=client)

    assert await geocoder.reverse_geocode(ORIGIN) is None
    assert await GoogleReverseGeocoder("").reverse_geocode(ORIGIN) is None
