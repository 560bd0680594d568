#!/usr/bin/env python3
"""
Sentinel Dispatch - Dispatch Coordinator

Sends drones to alerts, manually (operator picks alert and drone) or
automatically (right after a new ACTIVE alert, using the drone assigned to
the sensor's area).

Both paths converge on _dispatch():
1. ACTIVE -> SENT compare-and-swap, with the flight-history row written in
   the same transaction
2. only for the winner of that swap: publish the drone command and emit
   mission_started

A failed publish is logged and reported; it never rolls back step 1.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from entities import Alert, AlertStatus, Drone, FlightHistory, LatLon, Sensor
from errors import (
    AlertNotActive,
    AlertNotActiveOrNotFound,
    AlertNotFound,
    DroneNotFound,
    InvalidCommand,
    SensorNotFound,
)
from settings import COMMAND_EVENTS, SEND_DRONE, Settings

logger = logging.getLogger(__name__)

MANUAL_DECISION_PREFIX = "send_drone"
AUTO_DECISION_PREFIX = "auto_send_drone"

# Reasons reported when automatic dispatch does nothing
SKIP_AUTO_DISPATCH_DISABLED = "auto_dispatch_disabled"
SKIP_NO_AREA = "sensor_has_no_area"
SKIP_NO_DRONE = "area_has_no_drone"
SKIP_ALERT_NOT_ACTIVE = "alert_not_active"


def decimal_string(value: Any) -> Optional[str]:
    """Render a number as a plain decimal string ("12.9716", never "1.2E+1")."""
    if value is None or value == "":
        return None
    try:
        return format(Decimal(str(value)), "f")
    except InvalidOperation:
        return str(value)


@dataclass
class DroneCommand:
    """Command document published on the bus"""
    drone_id: str
    event: str
    area_id: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    target_altitude: Optional[float] = None
    usb_address: Optional[str] = None
    alert_id: Optional[str] = None

    @classmethod
    def for_drone(cls, drone: Drone, event: str, target: Optional[LatLon],
                  area_id: Optional[str] = None, alert_id: Optional[str] = None) -> "DroneCommand":
        return cls(
            drone_id=drone.drone_id,
            event=event,
            area_id=area_id,
            latitude=target.latitude if target else None,
            longitude=target.longitude if target else None,
            target_altitude=drone.target_altitude,
            usb_address=drone.usb_address,
            alert_id=alert_id,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "droneId": self.drone_id,
            "event": self.event,
            "areaId": self.area_id,
            "latitude": decimal_string(self.latitude),
            "longitude": decimal_string(self.longitude),
            "targetAltitude": decimal_string(self.target_altitude),
            "usbAddress": self.usb_address,
            "alertId": self.alert_id,
        }


@dataclass
class DispatchOutcome:
    """Result of a dispatch or drone command."""
    dispatched: bool
    reason: Optional[str] = None
    event: str = SEND_DRONE
    alert: Optional[Alert] = None
    drone: Optional[Drone] = None
    flight: Optional[FlightHistory] = None
    command: Optional[DroneCommand] = None
    command_published: bool = False
    auto: bool = False

    @classmethod
    def skipped(cls, reason: str, alert: Optional[Alert] = None) -> "DispatchOutcome":
        return cls(dispatched=False, reason=reason, alert=alert, auto=True)

    def to_dict(self) -> dict:
        return {
            "dispatched": self.dispatched,
            "reason": self.reason,
            "event": self.event,
            "auto": self.auto,
            "alert": self.alert.to_dict() if self.alert else None,
            "drone": self.drone.to_dict() if self.drone else None,
            "flight": self.flight.to_dict() if self.flight else None,
            "command": self.command.to_payload() if self.command else None,
            "commandPublished": self.command_published,
        }


class DispatchCoordinator:
    """Only writer of flight history; only publisher of drone commands."""

    def __init__(self, settings: Settings, store, bus, fanout, lifecycle):
        self.settings = settings
        self.store = store
        self.bus = bus
        self.fanout = fanout
        self.lifecycle = lifecycle

    async def _publish(self, command: DroneCommand) -> bool:
        topic = self.settings.topic_for(command.event)
        try:
            published = await self.bus.publish_json(topic, command.to_payload())
        except Exception as e:
            logger.error(f"Publishing {command.event} for drone {command.drone_id} raised: {e}")
            published = False
        if not published:
            logger.error(f"{command.event} command for drone {command.drone_id} was not delivered to {topic}")
        return published

    def _emit(self, event: str, payload: Dict[str, Any]):
        try:
            self.fanout.publish(event, payload)
        except Exception as e:
            logger.error(f"Fan-out of {event} failed: {e}")

    async def _area_business_id(self, drone: Drone) -> Optional[str]:
        if not drone.area_db_id:
            return None
        area = await self.store.get_area(drone.area_db_id)
        return area.area_id if area else None

    async def _dispatch(self, alert: Alert, sensor: Sensor, drone: Drone, target: LatLon,
                        decision: str, auto: bool) -> DispatchOutcome:
        flight = FlightHistory(
            drone_db_id=drone.id,
            drone_id=drone.drone_id,
            event=SEND_DRONE,
            sensor_id=sensor.sensor_id,
            alert_id=alert.id,
            target_latitude=target.latitude,
            target_longitude=target.longitude,
        )
        # Raises AlertNotActiveOrNotFound for the loser of a race; nothing below runs for it
        updated = await self.lifecycle.transition(alert.id, AlertStatus.SENT, decision, flight=flight)

        command = DroneCommand.for_drone(
            drone, SEND_DRONE, target,
            area_id=await self._area_business_id(drone),
            alert_id=alert.id,
        )
        published = await self._publish(command)

        self._emit("mission_started", {
            "alertId": updated.id,
            "sensorId": sensor.sensor_id,
            "droneId": drone.drone_id,
            "droneDbId": drone.id,
            "flightId": flight.id,
            "latitude": target.latitude,
            "longitude": target.longitude,
            "auto": auto,
            "commandPublished": published,
        })
        logger.info(
            f"Drone {drone.drone_id} dispatched to alert {alert.id} "
            f"({'auto' if auto else 'manual'}, command {'sent' if published else 'NOT sent'})"
        )
        return DispatchOutcome(
            dispatched=True,
            alert=updated,
            drone=drone,
            flight=flight,
            command=command,
            command_published=published,
            auto=auto,
        )

    # =========================================================================
    # Entry points
    # =========================================================================

    async def dispatch_manual(self, alert_id: str, drone_business_id: str,
                              target: Optional[LatLon] = None) -> DispatchOutcome:
        """
        Operator dispatch of a drone to an ACTIVE alert.

        Raises:
            DroneNotFound, AlertNotFound: unknown ids.
            AlertNotActive: alert already SENT or NEUTRALISED.
            AlertNotActiveOrNotFound: another transition won the race.
        """
        drone = await self.store.get_drone_by_business_id(drone_business_id)
        if drone is None:
            raise DroneNotFound(drone_business_id)

        alert = await self.store.get_alert(alert_id)
        if alert is None:
            raise AlertNotFound(alert_id)
        if alert.status is not AlertStatus.ACTIVE:
            raise AlertNotActive(alert_id, alert.status.value)

        sensor = await self.store.get_sensor(alert.sensor_db_id)
        if sensor is None:
            raise SensorNotFound(alert.sensor_id)

        return await self._dispatch(
            alert, sensor, drone,
            target or sensor.position,
            decision=f"{MANUAL_DECISION_PREFIX}:{drone.drone_id}",
            auto=False,
        )

    async def auto_dispatch(self, alert: Alert, sensor: Sensor) -> DispatchOutcome:
        """Dispatch the area's drone for a freshly raised alert, if configured to."""
        if not sensor.auto_dispatch:
            return DispatchOutcome.skipped(SKIP_AUTO_DISPATCH_DISABLED, alert)
        if not sensor.area_db_id:
            logger.info(f"Auto dispatch skipped: sensor {sensor.sensor_id} has no area")
            return DispatchOutcome.skipped(SKIP_NO_AREA, alert)

        drone = await self.store.get_drone_for_area(sensor.area_db_id)
        if drone is None:
            logger.info(f"Auto dispatch skipped: no drone assigned to area of sensor {sensor.sensor_id}")
            return DispatchOutcome.skipped(SKIP_NO_DRONE, alert)

        try:
            return await self._dispatch(
                alert, sensor, drone,
                sensor.position,
                decision=f"{AUTO_DECISION_PREFIX}:{drone.drone_id}",
                auto=True,
            )
        except (AlertNotActiveOrNotFound, AlertNotFound):
            logger.info(f"Auto dispatch skipped: alert {alert.id} is no longer ACTIVE")
            return DispatchOutcome.skipped(SKIP_ALERT_NOT_ACTIVE, alert)

    async def send_command(self, event: str, drone_business_id: str,
                           target: Optional[LatLon] = None, alert_id: Optional[str] = None,
                           sensor_id: Optional[str] = None) -> DispatchOutcome:
        """
        Operator drone command.

        send_drone with an alert id is a manual dispatch. send_drone without
        one records a flight and publishes. The other commands only publish.
        """
        if event not in COMMAND_EVENTS:
            raise InvalidCommand(f"Unknown drone command: {event}")

        if event == SEND_DRONE and alert_id:
            return await self.dispatch_manual(alert_id, drone_business_id, target)

        drone = await self.store.get_drone_by_business_id(drone_business_id)
        if drone is None:
            raise DroneNotFound(drone_business_id)

        flight = None
        if event == SEND_DRONE:
            if target is None:
                raise InvalidCommand("send_drone requires latitude and longitude")
            flight = await self.store.insert_flight(FlightHistory(
                drone_db_id=drone.id,
                drone_id=drone.drone_id,
                event=SEND_DRONE,
                sensor_id=sensor_id,
                target_latitude=target.latitude,
                target_longitude=target.longitude,
            ))

        command = DroneCommand.for_drone(
            drone, event, target, area_id=await self._area_business_id(drone)
        )
        published = await self._publish(command)

        if event == SEND_DRONE:
            self._emit("mission_started", {
                "alertId": None,
                "sensorId": sensor_id,
                "droneId": drone.drone_id,
                "droneDbId": drone.id,
                "flightId": flight.id,
                "latitude": target.latitude,
                "longitude": target.longitude,
                "auto": False,
                "commandPublished": published,
            })
        logger.info(f"{event} command for drone {drone.drone_id} {'sent' if published else 'NOT sent'}")

        return DispatchOutcome(
            dispatched=True,
            event=event,
            drone=drone,
            flight=flight,
            command=command,
            command_published=published,
        )
