#!/usr/bin/env python3
"""
Tests for the entity store (SQLite through aiosqlite).

Run with: pytest tests/test_store.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest

from entities import Alert, AlertStatus, Area, Drone, FlightHistory, Sensor
from errors import BusinessIdConflict, DuplicateActiveAlert, StoreUnavailable
from store import EntityStore


def _alert(sensor, **overrides) -> Alert:
    values = dict(
        sensor_db_id=sensor.id,
        sensor_id=sensor.sensor_id,
        type="Person",
        message="Person detected",
        confidence=87.0,
        detected_at=datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc),
    )
    values.update(overrides)
    return Alert(**values)


class TestReferenceData:

    @pytest.mark.asyncio
    async def test_lookup_by_business_id(self, store, seeded):
        sensor = await store.get_sensor_by_business_id("SENSOR-001")
        assert sensor.id == seeded.sensor.id
        assert sensor.auto_dispatch is False

        drone = await store.get_drone_by_business_id("DRONE-1")
        assert drone.id == seeded.drone.id
        assert drone.usb_address == "/dev/ttyUSB0"

    @pytest.mark.asyncio
    async def test_unknown_ids_return_none(self, store, seeded):
        assert await store.get_sensor_by_business_id("NOPE") is None
        assert await store.get_drone_by_business_id("NOPE") is None
        assert await store.get_alert("missing") is None
        assert await store.get_flight("missing") is None

    @pytest.mark.asyncio
    async def test_drone_for_area(self, store, seeded):
        drone = await store.get_drone_for_area(seeded.area.id)
        assert drone.drone_id == "DRONE-1"

        empty = await store.add_area(Area(area_id="AREA-2", name="South"))
        assert await store.get_drone_for_area(empty.id) is None

    @pytest.mark.asyncio
    async def test_duplicate_business_id_conflicts(self, store, seeded):
        with pytest.raises(BusinessIdConflict):
            await store.add_sensor(Sensor(sensor_id="SENSOR-001", name="dup", latitude=0, longitude=0))

    @pytest.mark.asyncio
    async def test_area_owns_at_most_one_drone(self, store, seeded):
        with pytest.raises(BusinessIdConflict):
            await store.add_drone(Drone(drone_id="DRONE-2", name="Owl", area_db_id=seeded.area.id))

    @pytest.mark.asyncio
    async def test_update_drone_state(self, store, seeded):
        at = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        updated = await store.update_drone_state(
            seeded.drone.id, latitude=12.1, longitude=77.2, altitude=35.0,
            battery=15.8, mode="GUIDED", at=at,
        )
        assert updated is True

        drone = await store.get_drone(seeded.drone.id)
        assert drone.last_latitude == 12.1
        assert drone.last_altitude == 35.0
        assert drone.drone_mode == "GUIDED"
        assert drone.last_telemetry_at == at


class TestActiveAlertIndex:

    @pytest.mark.asyncio
    async def test_second_active_alert_for_sensor_is_rejected(self, store, seeded):
        await store.insert_active_alert(_alert(seeded.sensor))
        with pytest.raises(DuplicateActiveAlert):
            await store.insert_active_alert(_alert(seeded.sensor))

    @pytest.mark.asyncio
    async def test_other_sensors_are_independent(self, store, seeded):
        await store.insert_active_alert(_alert(seeded.sensor))
        await store.insert_active_alert(_alert(seeded.auto_sensor))
        assert len(await store.list_active_alerts()) == 2

    @pytest.mark.asyncio
    async def test_new_active_alert_allowed_after_resolution(self, store, seeded):
        first = await store.insert_active_alert(_alert(seeded.sensor))
        await store.transition_alert(first.id, AlertStatus.NEUTRALISED, "neutralised", datetime.now(timezone.utc))
        await store.insert_active_alert(_alert(seeded.sensor))

        assert await store.count_alerts(seeded.sensor.id) == 2
        assert await store.count_alerts(seeded.sensor.id, AlertStatus.ACTIVE) == 1

    @pytest.mark.asyncio
    async def test_alert_round_trips(self, store, seeded):
        alert = await store.insert_active_alert(_alert(seeded.sensor, metadata={"camera": "12"}))
        stored = await store.get_alert(alert.id)

        assert stored.status is AlertStatus.ACTIVE
        assert stored.detected_at == alert.detected_at
        assert stored.metadata == {"camera": "12"}
        assert stored.created_at.tzinfo is not None


class TestTransition:

    @pytest.mark.asyncio
    async def test_compare_and_swap_applies_once(self, store, seeded):
        alert = await store.insert_active_alert(_alert(seeded.sensor))
        now = datetime.now(timezone.utc)

        first = await store.transition_alert(alert.id, AlertStatus.SENT, "send_drone:DRONE-1", now)
        second = await store.transition_alert(alert.id, AlertStatus.NEUTRALISED, "neutralised", now)

        assert first.status is AlertStatus.SENT
        assert first.decision == "send_drone:DRONE-1"
        assert second is None
        assert (await store.get_alert(alert.id)).status is AlertStatus.SENT

    @pytest.mark.asyncio
    async def test_flight_written_with_transition(self, store, seeded):
        alert = await store.insert_active_alert(_alert(seeded.sensor))
        flight = FlightHistory(drone_db_id=seeded.drone.id, drone_id="DRONE-1",
                               sensor_id="SENSOR-001", alert_id=alert.id)

        await store.transition_alert(alert.id, AlertStatus.SENT, "send_drone:DRONE-1",
                                     datetime.now(timezone.utc), flight=flight)

        flights, total = await store.list_flights(alert_id=alert.id)
        assert total == 1
        assert flights[0].id == flight.id

    @pytest.mark.asyncio
    async def test_losing_transition_writes_no_flight(self, store, seeded):
        alert = await store.insert_active_alert(_alert(seeded.sensor))
        now = datetime.now(timezone.utc)
        await store.transition_alert(alert.id, AlertStatus.NEUTRALISED, "neutralised", now)

        flight = FlightHistory(drone_db_id=seeded.drone.id, drone_id="DRONE-1", alert_id=alert.id)
        result = await store.transition_alert(alert.id, AlertStatus.SENT, "send_drone:DRONE-1", now, flight=flight)

        assert result is None
        _, total = await store.list_flights()
        assert total == 0

    @pytest.mark.asyncio
    async def test_neutralise_all_is_bulk(self, store, seeded):
        a = await store.insert_active_alert(_alert(seeded.sensor))
        b = await store.insert_active_alert(_alert(seeded.auto_sensor))
        decided_at = datetime(2024, 5, 1, tzinfo=timezone.utc)

        ids = await store.neutralise_all_active("neutralised:drill", decided_at)

        assert sorted(ids) == sorted([a.id, b.id])
        for alert_id in ids:
            alert = await store.get_alert(alert_id)
            assert alert.status is AlertStatus.NEUTRALISED
            assert alert.decided_at == decided_at
        assert await store.neutralise_all_active("neutralised", decided_at) == []


class TestListing:

    @pytest.mark.asyncio
    async def test_pagination_and_status_filter(self, store, seeded):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for i in range(5):
            alert = await store.insert_active_alert(_alert(seeded.sensor, created_at=base + timedelta(minutes=i)))
            await store.transition_alert(alert.id, AlertStatus.NEUTRALISED, "neutralised", base)
        await store.insert_active_alert(_alert(seeded.sensor, created_at=base + timedelta(minutes=10)))

        page, total = await store.list_alerts(status=AlertStatus.NEUTRALISED, limit=2, skip=0)
        assert total == 5
        assert len(page) == 2
        assert page[0].created_at > page[1].created_at

        page, total = await store.list_alerts(limit=10, sort_order="asc")
        assert total == 6
        assert page[0].created_at == base

    @pytest.mark.asyncio
    async def test_delete_alert(self, store, seeded):
        alert = await store.insert_active_alert(_alert(seeded.sensor))
        assert await store.delete_alert(alert.id) is True
        assert await store.delete_alert(alert.id) is False
        assert await store.find_active_alert(seeded.sensor.id) is None


class TestAvailability:

    @pytest.mark.asyncio
    async def test_ping(self, store):
        assert await store.ping() is True

    @pytest.mark.asyncio
    async def test_unreachable_database_raises_store_unavailable(self, tmp_path):
        broken = EntityStore(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dir' / 'x.db'}")
        try:
            assert await broken.ping() is False
            with pytest.raises(StoreUnavailable):
                await broken.get_alert("anything")
        finally:
            await broken.close()
