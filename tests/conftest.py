"""
Shared fixtures: a SQLite-backed entity store, a recording command bus
and a recording fan-out publisher.
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from jose import jwt

# Add app directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'app'))

from audit import AuditLog
from auth import JWT_ALGORITHM
from entities import Area, Drone, Sensor
from orchestrator import Orchestrator
from settings import Settings
from store import EntityStore


class FakeBus:
    """Stands in for MqttBus; records every publish."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.published = []
        self.handlers = []
        self.connected = True
        self.started = False

    def subscribe(self, pattern, handler):
        self.handlers.append((pattern, handler))

    async def start(self):
        self.started = True

    async def close(self):
        self.started = False

    async def publish_json(self, topic, payload):
        self.published.append((topic, payload))
        return self.succeed


class RecordingFanout:
    """Stands in for FanoutPublisher; records every event."""

    def __init__(self):
        self.events = []
        self.connection_count = 0

    def publish(self, event, payload):
        self.events.append((event, payload))

    def named(self, event):
        return [payload for name, payload in self.events if name == event]

    async def drain(self):
        pass

    async def close(self):
        pass


def make_token(operator, secret, expires_delta=None):
    """Sign an operator token the way the console's login service does."""
    now = datetime.now(timezone.utc)
    claims = {"sub": operator, "iat": now, "exp": now + (expires_delta or timedelta(hours=1))}
    return jwt.encode(claims, secret, algorithm=JWT_ALGORITHM)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}",
        mqtt_client_id="dispatch-test",
    )


@pytest.fixture
async def store(settings):
    store = EntityStore(settings.database_url)
    await store.init_schema()
    yield store
    await store.close()


@pytest.fixture
def bus():
    return FakeBus()


@pytest.fixture
def fanout():
    return RecordingFanout()


@pytest.fixture
async def seeded(store):
    """One area with one drone, a manual sensor and an auto-dispatch sensor."""
    area = await store.add_area(Area(area_id="AREA-1", name="North Gate", latitude=12.97, longitude=77.59))
    sensor = await store.add_sensor(Sensor(
        sensor_id="SENSOR-001", name="Gate camera",
        latitude=12.9716, longitude=77.5946,
        area_db_id=area.id, auto_dispatch=False,
    ))
    auto_sensor = await store.add_sensor(Sensor(
        sensor_id="SENSOR-002", name="Fence camera",
        latitude=12.9721, longitude=77.5933,
        area_db_id=area.id, auto_dispatch=True,
    ))
    drone = await store.add_drone(Drone(
        drone_id="DRONE-1", name="Hawk", area_db_id=area.id,
        drone_speed=12.5, target_altitude=40, max_altitude=120,
        usb_address="/dev/ttyUSB0",
    ))
    return SimpleNamespace(area=area, sensor=sensor, auto_sensor=auto_sensor, drone=drone)


@pytest.fixture
def orchestrator(settings, store, bus, fanout):
    return Orchestrator(settings, store, bus, fanout, AuditLog())
