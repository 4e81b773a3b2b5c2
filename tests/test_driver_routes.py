"""Listing the drivers a passenger can request"""

from conftest import DRIVER_ID, OTHER_DRIVER_ID, PASSENGER, auth_headers
from ridecore.models.ride_schema import Coordinate
from ridecore.store.user_directory import UserProfile


def test_available_drivers(client, users):
    users.add(UserProfile(id="driver-offline", role="driver", profile_completed=True))
    users.add(UserProfile(id="driver-lost", role="driver", is_online=True, profile_completed=True))
    users.add(
        UserProfile(
            id="driver-setup",
            role="driver",
            is_online=True,
            location=Coordinate(latitude=37.9, longitude=32.5),
        )
    )

    response = client.get("/drivers/available", headers=auth_headers(PASSENGER))

    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 2
    assert [d["id"] for d in body["drivers"]] == [DRIVER_ID, OTHER_DRIVER_ID]
    assert body["drivers"][0]["location"] == {"latitude": 37.86, "longitude": 32.47}
    assert "distanceKm" not in body["drivers"][0]


def test_available_drivers_nearest_first(client, users):
    users.add(
        UserProfile(
            id=OTHER_DRIVER_ID,
            role="driver",
            full_name="Ayse Kaya",
            vehicle_plate="42 KY 001",
            vehicle_model="Renault Clio",
            is_online=True,
            profile_completed=True,
            location=Coordinate(latitude=37.871, longitude=32.481),
        )
    )

    response = client.get(
        "/drivers/available",
        params={"latitude": 37.87, "longitude": 32.48},
        headers=auth_headers(PASSENGER),
    )

    drivers = response.json()["drivers"]
    assert [d["id"] for d in drivers] == [OTHER_DRIVER_ID, DRIVER_ID]
    assert drivers[0]["name"] == "Ayse Kaya"
    assert drivers[0]["vehiclePlate"] == "42 KY 001"
    assert drivers[0]["carModel"] == "Renault Clio"
    assert drivers[0]["distanceKm"] < drivers[1]["distanceKm"]


def test_available_drivers_requires_token(client):
    assert client.get("/drivers/available").status_code in (401, 403)


def test_available_drivers_rejects_bad_coordinates(client):
    response = client.get(
        "/drivers/available", params={"latitude": 123}, headers=auth_headers(PASSENGER)
    )

    assert response.status_code == 422
