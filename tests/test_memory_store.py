"""Tests for the in-process ride store and its change feed."""

import asyncio

import pytest

from conftest import DRIVER_ID, OTHER_DRIVER_ID, OTHER_PASSENGER_ID, PASSENGER_ID, ride_init
from ridecore.errors import Conflict, NotFound, ValidationError
from ridecore.models.ride_schema import Coordinate, RideStatus

OTHER_PARTIES = {"passenger_id": OTHER_PASSENGER_ID, "driver_id": OTHER_DRIVER_ID}


async def next_snapshot(subscription, timeout=1.0):
    return await asyncio.wait_for(subscription.__anext__(), timeout)


async def test_create_and_get(store):
    ride_id = await store.create(ride_init())
    ride = await store.get(ride_id)

    assert ride.id == ride_id
    assert ride.status == RideStatus.PENDING
    assert ride.passenger_id == PASSENGER_ID
    assert ride.driver_id == DRIVER_ID
    assert ride.pickup.address == "Zafer Meydani, Konya"
    assert ride.destination.display_name == "Alaaddin Tepesi"
    assert ride.passenger_boarded is False
    assert ride.version == 0
    assert ride.created_at.tzinfo is not None


async def test_create_rejects_missing_fields(store):
    data = ride_init()
    del data["destination"]

    with pytest.raises(ValidationError, match="destination"):
        await store.create(data)


async def test_create_rejects_destination_without_display_name(store):
    with pytest.raises(ValidationError):
        await store.create(ride_init(destination={"latitude": 37.9, "longitude": 32.5}))


async def test_get_unknown_ride(store):
    with pytest.raises(NotFound):
        await store.get("missing")


async def test_update_bumps_version(store):
    ride_id = await store.create(ride_init())

    ride = await store.update(ride_id, {"status": RideStatus.REJECTED})

    assert ride.status == RideStatus.REJECTED
    assert ride.version == 1
    assert ride.updated_at >= ride.created_at
    assert (await store.get(ride_id)).status == RideStatus.REJECTED


async def test_update_with_expected_status_mismatch(store):
    ride_id = await store.create(ride_init())

    with pytest.raises(Conflict):
        await store.update(
            ride_id, {"status": RideStatus.IN_PROGRESS}, expected_status=RideStatus.ACCEPTED
        )
    assert (await store.get(ride_id)).status == RideStatus.PENDING


async def test_update_with_stale_version(store):
    ride_id = await store.create(ride_init())
    await store.update(ride_id, {"cancel_reason": "first"}, expected_version=0)

    with pytest.raises(Conflict):
        await store.update(ride_id, {"cancel_reason": "second"}, expected_version=0)


async def test_update_rejects_immutable_and_unknown_fields(store):
    ride_id = await store.create(ride_init())

    with pytest.raises(ValidationError):
        await store.update(ride_id, {"passenger_id": "someone-else"})
    with pytest.raises(ValidationError):
        await store.update(ride_id, {"surge_multiplier": 2})


async def test_update_unknown_ride(store):
    with pytest.raises(NotFound):
        await store.update("missing", {"status": RideStatus.CANCELLED})


async def test_query_filters_by_status_and_predicate(store):
    first = await store.create(ride_init())
    second = await store.create(ride_init(**OTHER_PARTIES))
    await store.update(second, {"status": RideStatus.CANCELLED})

    pending = await store.query(statuses=[RideStatus.PENDING])
    mine = await store.query(lambda r: r.passenger_id == OTHER_PASSENGER_ID)

    assert [r.id for r in pending] == [first]
    assert [r.id for r in mine] == [second]
    assert [r.id for r in await store.query()] == [first, second]


async def test_create_refuses_passenger_with_active_ride(store):
    first = await store.create(ride_init())

    with pytest.raises(Conflict) as exc_info:
        await store.create(ride_init(driver_id=OTHER_DRIVER_ID))

    assert exc_info.value.ride_id == first
    assert "active ride" in exc_info.value.message


async def test_create_refuses_busy_driver(store):
    await store.create(ride_init())

    with pytest.raises(Conflict, match="busy"):
        await store.create(ride_init(passenger_id=OTHER_PASSENGER_ID))


async def test_create_allowed_once_previous_ride_is_terminal(store):
    first = await store.create(ride_init())
    await store.update(first, {"status": RideStatus.CANCELLED})

    second = await store.create(ride_init())

    assert second != first


async def test_query_filters_by_id_party_and_driver(store):
    first = await store.create(ride_init())
    second = await store.create(ride_init(**OTHER_PARTIES))

    assert [r.id for r in await store.query(ride_id=second)] == [second]
    assert await store.query(ride_id="missing") == []
    assert [r.id for r in await store.query(driver_id=OTHER_DRIVER_ID)] == [second]
    assert [r.id for r in await store.query(party_ids=[PASSENGER_ID])] == [first]
    assert [r.id for r in await store.query(party_ids=[OTHER_DRIVER_ID, PASSENGER_ID])] == [
        first,
        second,
    ]


async def test_query_limit_and_order(store):
    first = await store.create(ride_init())
    second = await store.create(ride_init(**OTHER_PARTIES))

    assert [r.id for r in await store.query(limit=1)] == [first]
    assert [r.id for r in await store.query(limit=1, newest_first=True)] == [second]


async def test_load_legacy_document(store):
    ride = store.load_document(
        {
            "_id": "legacy-1",
            "passengerId": PASSENGER_ID,
            "driverId": DRIVER_ID,
            "status": "completed",
            "pickupLocation": {"latitude": 37.87, "longitude": 32.48},
            "dropoffLocation": {"latitude": 37.9, "longitude": 32.5, "address": "Otogar"},
            "calculatedFare": 25.5,
            "requestTime": "2024-05-01T10:00:00",
        }
    )

    assert ride.id == "legacy-1"
    assert ride.destination.display_name == "Otogar"
    assert ride.fare == 26
    assert (await store.get("legacy-1")).status == RideStatus.COMPLETED


# -----------------------------------------------------------------------------
# Subscriptions
# -----------------------------------------------------------------------------


async def test_watch_yields_initial_snapshot_then_changes(store):
    ride_id = await store.create(ride_init())

    async with store.watch(ride_id) as subscription:
        initial = await next_snapshot(subscription)
        assert [r.id for r in initial.rides] == [ride_id]
        assert initial.changed is None

        location = Coordinate(latitude=37.88, longitude=32.49)
        await store.update(ride_id, {"driver_location": location})
        snapshot = await next_snapshot(subscription)

        assert snapshot.changed.id == ride_id
        assert snapshot.rides[0].driver_location == location


async def test_subscription_tracks_rides_leaving_the_filter(store):
    ride_id = await store.create(ride_init())
    subscription = store.subscribe(lambda r: r.status == RideStatus.PENDING)

    assert len((await next_snapshot(subscription)).rides) == 1

    await store.update(ride_id, {"status": RideStatus.REJECTED})
    snapshot = await next_snapshot(subscription)

    assert snapshot.rides == []
    assert snapshot.changed.status == RideStatus.REJECTED
    subscription.close()


async def test_subscription_ignores_unrelated_changes(store):
    watched = await store.create(ride_init())
    other = await store.create(ride_init(**OTHER_PARTIES))

    async with store.watch(watched) as subscription:
        await next_snapshot(subscription)
        await store.update(other, {"cancel_reason": "noise"})

        with pytest.raises(asyncio.TimeoutError):
            await next_snapshot(subscription, timeout=0.05)


async def test_subscription_skips_changes_already_in_initial_snapshot(store):
    ride_id = await store.create(ride_init())
    subscription = store.watch(ride_id)
    # committed after registration but before the initial load
    await store.update(ride_id, {"cancel_reason": "early"})

    initial = await next_snapshot(subscription)
    assert initial.rides[0].cancel_reason == "early"

    with pytest.raises(asyncio.TimeoutError):
        await next_snapshot(subscription, timeout=0.05)
    subscription.close()


async def test_closing_subscription_ends_iteration(store):
    ride_id = await store.create(ride_init())
    subscription = store.watch(ride_id)
    await next_snapshot(subscription)
    assert store.subscriber_count == 1

    subscription.close()

    assert store.subscriber_count == 0
    with pytest.raises(StopAsyncIteration):
        await next_snapshot(subscription)


async def test_store_close_ends_all_subscriptions(store):
    ride_id = await store.create(ride_init())
    subscriptions = [store.watch(ride_id) for _ in range(3)]

    await store.close()

    assert store.subscriber_count == 0
    assert all(s.closed for s in subscriptions)
