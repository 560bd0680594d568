#!/usr/bin/env python3
"""
Sentinel Dispatch - Drone Telemetry Ingestor

Consumes drone telemetry from the command bus (drones/<droneId>/telemetry),
forwards every valid message to dashboards as `drone_telemetry` and keeps
each drone's last-known state in the store.

Features:
- Accepts the field spellings used by the flight controllers in the field
  (droneid/droneId, currentLatitude/lat, currentLongitude/lng, ...)
- Drops messages without a drone id or a usable position
- Drops messages for drones that are not registered
- Persists last-known state only for full snapshots (command == "altitudeData")
- Periodic statistics logging
"""

import asyncio
import json
import logging
import math
from typing import Any, Dict, Optional

from entities import TelemetryRecord, utc_now
from errors import DispatchError

logger = logging.getLogger(__name__)

SNAPSHOT_COMMAND = "altitudeData"
STATS_INTERVAL = 60  # seconds


def _safe_float(value: Any) -> Optional[float]:
    """Safely convert value to float"""
    if value is None or value == '':
        return None
    try:
        number = float(value)
    except (ValueError, TypeError):
        return None
    return number if math.isfinite(number) else None


def _safe_int(value: Any) -> Optional[int]:
    """Safely convert value to int"""
    number = _safe_float(value)
    return int(number) if number is not None else None


def _first(data: Dict, *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != '':
            return value
    return None


def _drone_id_from_topic(topic: str) -> Optional[str]:
    parts = topic.split('/')
    if len(parts) == 3 and parts[0] == 'drones' and parts[2] == 'telemetry' and parts[1]:
        return parts[1]
    return None


def parse_telemetry(topic: str, payload: Any) -> Optional[TelemetryRecord]:
    """
    Parse one telemetry message.

    Returns None when the payload is not a JSON object, carries no drone id,
    or lacks a numeric latitude/longitude.
    """
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode('utf-8')
        except UnicodeDecodeError:
            return None
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError:
            return None
    if not isinstance(payload, dict):
        return None

    drone_id = _first(payload, 'droneid', 'droneId') or _drone_id_from_topic(topic)
    lat = _safe_float(_first(payload, 'currentLatitude', 'lat'))
    lng = _safe_float(_first(payload, 'currentLongitude', 'lng', 'lon'))
    if not drone_id or lat is None or lng is None:
        return None

    return TelemetryRecord(
        drone_id=str(drone_id),
        lat=lat,
        lng=lng,
        alt=_safe_float(_first(payload, 'currentAltitude', 'alt')),
        speed=_safe_float(_first(payload, 'droneSpeed', 'speed')),
        battery=_safe_float(_first(payload, 'batteryVoltage', 'battery')),
        mode=_first(payload, 'droneMode', 'mode'),
        gps_fix=_safe_int(payload.get('GPSFix')),
        satellites=_safe_int(payload.get('satelliteCount')),
        wind_speed=_safe_float(payload.get('windSpeed')),
        target_distance=_safe_float(payload.get('targetDistance')),
        event=payload.get('event'),
        status=payload.get('status'),
        command=payload.get('command'),
        received_at=utc_now(),
    )


class TelemetryIngestor:
    """Bus handler for drone telemetry"""

    def __init__(self, store, fanout):
        self.store = store
        self.fanout = fanout
        self._stats_task: Optional[asyncio.Task] = None
        self.stats = {
            'received': 0,
            'forwarded': 0,
            'persisted': 0,
            'dropped': 0,
            'errors': 0,
        }

    async def handle(self, topic: str, payload: Any):
        """Handle one inbound telemetry message. Never raises."""
        self.stats['received'] += 1

        record = parse_telemetry(topic, payload)
        if record is None:
            self.stats['dropped'] += 1
            logger.warning(f"Invalid telemetry on {topic}, dropped")
            return

        try:
            drone = await self.store.get_drone_by_business_id(record.drone_id)
        except DispatchError as e:
            self.stats['errors'] += 1
            logger.error(f"Telemetry lookup for drone {record.drone_id} failed: {e}")
            return

        if drone is None:
            self.stats['dropped'] += 1
            logger.warning(f"Telemetry from unknown drone {record.drone_id}, dropped")
            return

        self.fanout.publish('drone_telemetry', record.to_dict(drone.id))
        self.stats['forwarded'] += 1

        if record.command != SNAPSHOT_COMMAND:
            return

        try:
            await self.store.update_drone_state(
                drone.id,
                latitude=record.lat,
                longitude=record.lng,
                altitude=record.alt,
                battery=record.battery,
                mode=record.mode,
                at=record.received_at,
            )
            self.stats['persisted'] += 1
            logger.debug(f"Drone {record.drone_id}: last-known state updated")
        except DispatchError as e:
            self.stats['errors'] += 1
            logger.error(f"Failed to persist telemetry for drone {record.drone_id}: {e}")

    def start(self, interval: float = STATS_INTERVAL):
        if self._stats_task is None:
            self._stats_task = asyncio.create_task(self._log_stats(interval))

    async def close(self):
        task, self._stats_task = self._stats_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _log_stats(self, interval: float):
        """Periodically log statistics"""
        while True:
            try:
                await asyncio.sleep(interval)
                logger.info(
                    f"Telemetry Stats: "
                    f"Received: {self.stats['received']}, "
                    f"Forwarded: {self.stats['forwarded']}, "
                    f"Persisted: {self.stats['persisted']}, "
                    f"Dropped: {self.stats['dropped']}, "
                    f"Errors: {self.stats['errors']}"
                )
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error logging stats: {e}")
