#!/usr/bin/env python3
"""
Sentinel Dispatch - Domain Entities

Plain dataclasses for the records the orchestrator reads and writes.
`to_dict()` produces the camelCase JSON shape used by the HTTP API and
fan-out events.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4


def new_id() -> str:
    return str(uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the store."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


class AlertStatus(str, Enum):
    """Alert lifecycle states. ACTIVE is initial, the others are terminal."""
    ACTIVE = "ACTIVE"
    SENT = "SENT"
    NEUTRALISED = "NEUTRALISED"

    @property
    def terminal(self) -> bool:
        return self is not AlertStatus.ACTIVE


@dataclass
class LatLon:
    latitude: float
    longitude: float


@dataclass
class Area:
    area_id: str
    name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "areaId": self.area_id,
            "name": self.name,
            "latitude": self.latitude,
            "longitude": self.longitude,
        }


@dataclass
class Sensor:
    sensor_id: str
    name: str
    latitude: float
    longitude: float
    area_db_id: Optional[str] = None
    auto_dispatch: bool = False
    id: str = field(default_factory=new_id)

    @property
    def position(self) -> LatLon:
        return LatLon(self.latitude, self.longitude)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sensorId": self.sensor_id,
            "name": self.name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "areaDbId": self.area_db_id,
            "autoDispatch": self.auto_dispatch,
        }


@dataclass
class Drone:
    """Drone operational profile plus its last-known telemetry snapshot."""
    drone_id: str
    name: str
    drone_type: str = "quadcopter"
    area_db_id: Optional[str] = None

    # Operational envelope
    drone_speed: float = 0.0
    target_altitude: float = 0.0
    max_altitude: float = 0.0
    min_battery_level: float = 0.0
    battery_fail_safe: Optional[str] = None
    gps_lost: Optional[str] = None
    telemetry_lost: Optional[str] = None
    usb_address: Optional[str] = None

    # Last-known state, written only by the telemetry ingestor
    last_latitude: Optional[float] = None
    last_longitude: Optional[float] = None
    last_altitude: Optional[float] = None
    battery: Optional[float] = None
    drone_mode: Optional[str] = None
    last_telemetry_at: Optional[datetime] = None

    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "droneId": self.drone_id,
            "name": self.name,
            "type": self.drone_type,
            "areaDbId": self.area_db_id,
            "droneSpeed": self.drone_speed,
            "targetAltitude": self.target_altitude,
            "maxAltitude": self.max_altitude,
            "minBatteryLevel": self.min_battery_level,
            "usbAddress": self.usb_address,
            "lastLatitude": self.last_latitude,
            "lastLongitude": self.last_longitude,
            "lastAltitude": self.last_altitude,
            "battery": self.battery,
            "droneMode": self.drone_mode,
            "lastTelemetryAt": iso(self.last_telemetry_at),
        }


@dataclass
class DetectionRecord:
    """Canonical detection produced by the ingestion adapter."""
    type: str
    message: str
    confidence: float
    timestamp_utc: datetime
    human_time: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "message": self.message,
            "confidence": self.confidence,
            "timestamp": iso(self.timestamp_utc),
            "time": self.human_time,
        }


@dataclass
class Alert:
    sensor_db_id: str
    sensor_id: str
    type: str
    message: str
    confidence: float = 0.0
    detected_at: Optional[datetime] = None
    detected_time: Optional[str] = None
    status: AlertStatus = AlertStatus.ACTIVE
    decision: Optional[str] = None
    decided_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=new_id)

    @classmethod
    def from_detection(cls, sensor: Sensor, detection: DetectionRecord,
                       metadata: Optional[Dict[str, Any]] = None) -> "Alert":
        return cls(
            sensor_db_id=sensor.id,
            sensor_id=sensor.sensor_id,
            type=detection.type,
            message=detection.message,
            confidence=detection.confidence,
            detected_at=detection.timestamp_utc,
            detected_time=detection.human_time,
            metadata=metadata,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sensorDbId": self.sensor_db_id,
            "sensorId": self.sensor_id,
            "type": self.type,
            "message": self.message,
            "confidence": self.confidence,
            "timestamp": iso(self.detected_at),
            "time": self.detected_time,
            "status": self.status.value,
            "decision": self.decision,
            "decidedAt": iso(self.decided_at),
            "metadata": self.metadata,
            "createdAt": iso(self.created_at),
        }


@dataclass
class FlightHistory:
    """Append-only audit record of one dispatch."""
    drone_db_id: str
    drone_id: str
    event: str = "send_drone"
    sensor_id: Optional[str] = None
    alert_id: Optional[str] = None
    target_latitude: Optional[float] = None
    target_longitude: Optional[float] = None
    dispatched_at: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "droneDbId": self.drone_db_id,
            "droneId": self.drone_id,
            "event": self.event,
            "sensorId": self.sensor_id,
            "alertId": self.alert_id,
            "targetLatitude": self.target_latitude,
            "targetLongitude": self.target_longitude,
            "dispatchedAt": iso(self.dispatched_at),
        }


@dataclass
class TelemetryRecord:
    """Normalized drone telemetry message."""
    drone_id: str
    lat: float
    lng: float
    alt: Optional[float] = None
    speed: Optional[float] = None
    battery: Optional[float] = None
    mode: Optional[str] = None
    gps_fix: Optional[int] = None
    satellites: Optional[int] = None
    wind_speed: Optional[float] = None
    target_distance: Optional[float] = None
    event: Optional[str] = None
    status: Optional[str] = None
    command: Optional[str] = None
    received_at: datetime = field(default_factory=utc_now)

    def to_dict(self, drone_db_id: Optional[str] = None) -> dict:
        return {
            "droneDbId": drone_db_id,
            "droneId": self.drone_id,
            "lat": self.lat,
            "lng": self.lng,
            "alt": self.alt,
            "speed": self.speed,
            "battery": self.battery,
            "mode": self.mode,
            "gpsFix": self.gps_fix,
            "satellites": self.satellites,
            "windSpeed": self.wind_speed,
            "targetDistance": self.target_distance,
            "event": self.event,
            "status": self.status,
            "command": self.command,
            "ts": int(self.received_at.timestamp() * 1000),
        }
