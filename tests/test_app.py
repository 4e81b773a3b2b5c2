"""Application wiring: provider selection and the health endpoints"""

import pytest

from ridecore.config import Settings
from ridecore.main import build_route_provider, create_app
from ridecore.utils.maps_utils import GoogleRoutesProvider, StraightLineRouteProvider


def settings(**overrides) -> Settings:
    values = {"store_backend": "memory", "log_level": "WARNING"}
    values.update(overrides)
    return Settings(**values)


def test_google_routing_without_key_fails_at_startup():
    with pytest.raises(ValueError, match="GOOGLE_MAPS_API_KEY"):
        create_app(settings=settings(routing_provider="google", google_maps_api_key=""))


def test_unknown_routing_provider_fails_at_startup():
    with pytest.raises(ValueError, match="ROUTING_PROVIDER"):
        build_route_provider(settings(routing_provider="osrm"))


def test_google_routing_with_key():
    provider = build_route_provider(
        settings(routing_provider="google", google_maps_api_key="test-key")
    )

    assert isinstance(provider, GoogleRoutesProvider)
    assert provider.api_key == "test-key"


def test_straight_line_routing_is_explicit():
    provider = build_route_provider(settings(routing_provider="straight_line"))

    assert isinstance(provider, StraightLineRouteProvider)
