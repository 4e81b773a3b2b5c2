"""Shared fixtures for the ride core tests."""

from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from ridecore.config import Settings
from ridecore.errors import ProviderError
from ridecore.main import create_app
from ridecore.models.ride_schema import Actor, ActorRole, Coordinate
from ridecore.services.dispatch_engine import DispatchEngine
from ridecore.services.estimator import TripEstimator
from ridecore.services.simulation import PositionSimulator
from ridecore.store.memory_store import InMemoryRideStore
from ridecore.store.user_directory import InMemoryUserDirectory, UserProfile
from ridecore.utils.jwt_utils import create_access_token
from ridecore.utils.maps_utils import RouteEstimate, RouteProvider

PASSENGER_ID = "passenger-001"
DRIVER_ID = "driver-001"
OTHER_PASSENGER_ID = "passenger-002"
OTHER_DRIVER_ID = "driver-002"

PICKUP = {"latitude": 37.87, "longitude": 32.48, "address": "Zafer Meydani, Konya"}
DESTINATION = {"latitude": 37.90, "longitude": 32.50, "display_name": "Alaaddin Tepesi"}
DRIVER_START = Coordinate(latitude=37.86, longitude=32.47)

PASSENGER = Actor(user_id=PASSENGER_ID, role=ActorRole.PASSENGER)
DRIVER = Actor(user_id=DRIVER_ID, role=ActorRole.DRIVER)
ADMIN = Actor(user_id="admin-001", role=ActorRole.ADMIN)


def ride_init(passenger_id: str = PASSENGER_ID, driver_id: str = DRIVER_ID, **overrides) -> dict:
    data = {
        "passengerId": passenger_id,
        "driverId": driver_id,
        "pickup": dict(PICKUP),
        "destination": dict(DESTINATION),
    }
    data.update(overrides)
    return data


class FakeRouteProvider(RouteProvider):
    """Three-point straight route with fixed metrics; records every call"""

    def __init__(self, distance_km: float = 5.2, duration_minutes: float = 12.0):
        self.distance_km = distance_km
        self.duration_minutes = duration_minutes
        self.calls: List[tuple] = []
        self.failures: List[ProviderError] = []

    def fail_next(self, *errors: ProviderError) -> None:
        self.failures.extend(errors)

    async def compute_route(self, origin: Coordinate, destination: Coordinate) -> RouteEstimate:
        self.calls.append((origin.as_tuple(), destination.as_tuple()))
        if self.failures:
            raise self.failures.pop(0)
        middle = Coordinate(
            latitude=(origin.latitude + destination.latitude) / 2,
            longitude=(origin.longitude + destination.longitude) / 2,
        )
        return RouteEstimate(
            coordinates=[
                Coordinate(latitude=origin.latitude, longitude=origin.longitude),
                middle,
                Coordinate(latitude=destination.latitude, longitude=destination.longitude),
            ],
            distance_km=self.distance_km,
            duration_minutes=self.duration_minutes,
        )


@pytest.fixture
def store():
    return InMemoryRideStore()


@pytest.fixture
def users():
    directory = InMemoryUserDirectory()
    for driver_id in (DRIVER_ID, OTHER_DRIVER_ID):
        directory.add(
            UserProfile(
                id=driver_id,
                role="driver",
                is_online=True,
                profile_completed=True,
                location=DRIVER_START,
            )
        )
    for passenger_id in (PASSENGER_ID, OTHER_PASSENGER_ID):
        directory.add(UserProfile(id=passenger_id, role="passenger"))
    return directory


@pytest.fixture
def provider():
    return FakeRouteProvider()


@pytest.fixture
def estimator(provider):
    return TripEstimator(provider, backoff_seconds=0)


def build_engine(
    store,
    estimator,
    users,
    simulator: Optional[PositionSimulator] = None,
    grace: float = 0.05,
    **kwargs,
) -> DispatchEngine:
    return DispatchEngine(
        store,
        estimator,
        users=users,
        simulator=simulator,
        completion_grace_seconds=grace,
        **kwargs,
    )


@pytest.fixture
async def engine(store, estimator, users):
    engine = build_engine(store, estimator, users)
    yield engine
    await engine.shutdown()


@pytest.fixture
async def simulated_engine(store, estimator, users):
    engine = build_engine(store, estimator, users, simulator=PositionSimulator(tick_interval_ms=10))
    yield engine
    await engine.shutdown()


TEST_SETTINGS = Settings(
    store_backend="memory",
    jwt_secret_key="test-secret",
    routing_provider="straight_line",
    simulate_positions=False,
    completion_grace_seconds=0.05,
    route_retry_backoff_seconds=0,
    log_level="WARNING",
)


def token_for(actor: Actor) -> str:
    return create_access_token(
        {"user_id": actor.user_id, "role": actor.role.value}, TEST_SETTINGS
    )


def auth_headers(actor: Actor) -> dict:
    return {"Authorization": f"Bearer {token_for(actor)}"}


@pytest.fixture
def client(store, users, provider):
    app = create_app(settings=TEST_SETTINGS, store=store, users=users, provider=provider)
    with TestClient(app) as test_client:
        yield test_client
