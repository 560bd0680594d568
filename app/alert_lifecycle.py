#!/usr/bin/env python3
"""
Sentinel Dispatch - Alert Lifecycle Manager

Owns every alert status change. States:

    ACTIVE --(dispatch)--> SENT
    ACTIVE --(operator)--> NEUTRALISED

SENT and NEUTRALISED are terminal. A sensor has at most one ACTIVE alert;
the store's partial unique index is the source of truth for that rule and
this manager turns a rejected insert into an idempotent "skipped" result.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from entities import Alert, AlertStatus, DetectionRecord, FlightHistory, Sensor, utc_now
from errors import (
    AlertNotActiveOrNotFound,
    AlertNotFound,
    DuplicateActiveAlert,
    InvalidInputError,
    SensorNotFound,
)

logger = logging.getLogger(__name__)

NEUTRALISED_DECISION = "neutralised"

# An insert rejected as duplicate whose winner is already resolved again is retried
CREATE_ATTEMPTS = 3


def neutralise_decision(reason: Optional[str] = None) -> str:
    reason = (reason or "").strip()
    return f"{NEUTRALISED_DECISION}:{reason}" if reason else NEUTRALISED_DECISION


@dataclass
class AlertCreation:
    """Outcome of create(): the new or pre-existing ACTIVE alert."""
    alert: Alert
    sensor: Sensor
    skipped: bool = False


class AlertLifecycleManager:
    """Creates alerts and applies compare-and-swap status transitions"""

    def __init__(self, store, fanout):
        self.store = store
        self.fanout = fanout

    def _emit(self, event: str, payload: Dict[str, Any]):
        try:
            self.fanout.publish(event, payload)
        except Exception as e:
            logger.error(f"Fan-out of {event} failed: {e}")

    async def _sensor_summary(self, sensor: Sensor) -> Dict[str, Any]:
        area = await self.store.get_area(sensor.area_db_id) if sensor.area_db_id else None
        return {
            "id": sensor.id,
            "sensorId": sensor.sensor_id,
            "name": sensor.name,
            "latitude": sensor.latitude,
            "longitude": sensor.longitude,
            "area": {"id": area.id, "areaId": area.area_id, "name": area.name} if area else None,
        }

    # =========================================================================
    # Creation
    # =========================================================================

    async def create(self, sensor_business_id: str, detection: DetectionRecord,
                     metadata: Optional[Dict[str, Any]] = None) -> AlertCreation:
        """
        Raise an ACTIVE alert for a sensor, or return the one already raised.

        Raises:
            SensorNotFound: no sensor with that business id.
        """
        sensor = await self.store.get_sensor_by_business_id(sensor_business_id)
        if sensor is None:
            raise SensorNotFound(sensor_business_id)

        for _ in range(CREATE_ATTEMPTS):
            existing = await self.store.find_active_alert(sensor.id)
            if existing is not None:
                logger.info(f"Sensor {sensor.sensor_id} already has ACTIVE alert {existing.id}, skipping")
                return AlertCreation(alert=existing, sensor=sensor, skipped=True)

            alert = Alert.from_detection(sensor, detection, metadata)
            try:
                await self.store.insert_active_alert(alert)
            except DuplicateActiveAlert:
                logger.info(f"Concurrent detection for sensor {sensor.sensor_id} lost the insert race")
                continue

            logger.info(f"Alert {alert.id} raised for sensor {sensor.sensor_id}: {alert.message}")
            payload = alert.to_dict()
            payload["sensor"] = await self._sensor_summary(sensor)
            self._emit("alert_active", payload)
            return AlertCreation(alert=alert, sensor=sensor, skipped=False)

        # Every attempt collided with an alert that was resolved before we could read it
        existing = await self.store.find_active_alert(sensor.id)
        if existing is None:
            raise DuplicateActiveAlert(sensor.id)
        return AlertCreation(alert=existing, sensor=sensor, skipped=True)

    # =========================================================================
    # Transitions
    # =========================================================================

    async def transition(self, alert_id: str, target: AlertStatus, decision: str,
                         flight: Optional[FlightHistory] = None) -> Alert:
        """
        Move an ACTIVE alert to SENT or NEUTRALISED.

        Exactly one concurrent caller wins; the others get
        AlertNotActiveOrNotFound and nothing is written for them, including
        the optional flight-history row.
        """
        if not target.terminal:
            raise InvalidInputError(f"Cannot transition an alert to {target.value}")

        updated = await self.store.transition_alert(alert_id, target, decision, utc_now(), flight=flight)
        if updated is None:
            if await self.store.get_alert(alert_id) is None:
                raise AlertNotFound(alert_id)
            raise AlertNotActiveOrNotFound(alert_id)

        logger.info(f"Alert {alert_id} -> {target.value} ({decision})")
        self._emit("alert_resolved", {
            "id": updated.id,
            "status": updated.status.value,
            "decision": updated.decision,
            "decidedAt": updated.to_dict()["decidedAt"],
        })
        return updated

    async def neutralise(self, alert_id: str, reason: Optional[str] = None) -> Alert:
        return await self.transition(alert_id, AlertStatus.NEUTRALISED, neutralise_decision(reason))

    async def neutralise_all(self, reason: Optional[str] = None) -> List[str]:
        """Neutralise every ACTIVE alert with one conditional bulk update."""
        decided_at = utc_now()
        decision = neutralise_decision(reason)
        ids = await self.store.neutralise_all_active(decision, decided_at)
        logger.info(f"Neutralised {len(ids)} active alerts ({decision})")
        for alert_id in ids:
            self._emit("alert_resolved", {
                "id": alert_id,
                "status": AlertStatus.NEUTRALISED.value,
                "decision": decision,
                "decidedAt": decided_at.isoformat(),
            })
        return ids

    async def delete(self, alert_id: str):
        if not await self.store.delete_alert(alert_id):
            raise AlertNotFound(alert_id)
        logger.info(f"Alert {alert_id} deleted")
        self._emit("alert_deleted", {"id": alert_id})

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, alert_id: str) -> Alert:
        alert = await self.store.get_alert(alert_id)
        if alert is None:
            raise AlertNotFound(alert_id)
        return alert

    async def list(self, status: Optional[AlertStatus] = None, limit: int = 100, skip: int = 0,
                   sort_by: str = "createdAt", sort_order: str = "desc") -> Tuple[List[Alert], int]:
        return await self.store.list_alerts(
            status=status, limit=limit, skip=skip, sort_by=sort_by, sort_order=sort_order
        )

    async def list_active(self) -> List[Alert]:
        return await self.store.list_active_alerts()

    async def history_for_sensor(self, sensor_db_id: str) -> List[Alert]:
        if await self.store.get_sensor(sensor_db_id) is None:
            raise SensorNotFound(sensor_db_id)
        return await self.store.list_alerts_for_sensor(sensor_db_id)
