#!/usr/bin/env python3
"""
Sentinel Dispatch - Orchestrator

Composition root: wires the entity store, command bus, fan-out publisher
and audit log into the lifecycle manager, dispatch coordinator and
telemetry ingestor, and owns their startup/shutdown order.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import detection_parser
from alert_lifecycle import AlertLifecycleManager
from audit import SYSTEM_USER, AuditAction, AuditLog, AuditResult
from dispatch import DispatchCoordinator, DispatchOutcome
from entities import Alert, Sensor
from errors import DispatchError
from fanout import FanoutPublisher
from mqtt_bus import MqttBus
from settings import Settings
from store import EntityStore
from telemetry_ingest import TelemetryIngestor

logger = logging.getLogger(__name__)


@dataclass
class IngestionResult:
    alert: Alert
    sensor: Sensor
    skipped: bool
    auto_dispatch: Optional[DispatchOutcome] = None

    def to_dict(self) -> dict:
        return {
            "success": True,
            "skipped": self.skipped,
            "alert": self.alert.to_dict(),
            "autoDispatch": self.auto_dispatch.to_dict() if self.auto_dispatch else None,
        }


class Orchestrator:
    """Owns the dispatch core and its collaborators"""

    def __init__(self, settings: Settings, store: EntityStore, bus: MqttBus,
                 fanout: FanoutPublisher, audit: AuditLog):
        self.settings = settings
        self.store = store
        self.bus = bus
        self.fanout = fanout
        self.audit = audit

        self.lifecycle = AlertLifecycleManager(store, fanout)
        self.dispatch = DispatchCoordinator(settings, store, bus, fanout, self.lifecycle)
        self.telemetry = TelemetryIngestor(store, fanout)
        self.bus.subscribe(settings.telemetry_topic, self.telemetry.handle)
        self._started = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "Orchestrator":
        return cls(
            settings=settings,
            store=EntityStore(settings.database_url),
            bus=MqttBus(settings),
            fanout=FanoutPublisher(send_timeout_s=settings.fanout_send_timeout_s),
            audit=AuditLog(to_database=settings.audit_to_database),
        )

    async def start(self):
        """Create the schema and connect to the bus"""
        if self._started:
            return
        logger.info("Starting Sentinel Dispatch orchestrator")
        await self.store.init_schema()
        self.audit.set_store(self.store)
        await self.bus.start()
        self.telemetry.start()
        self._started = True
        self.audit.system_startup()

    async def close(self):
        if not self._started:
            return
        self._started = False
        self.audit.system_shutdown()
        await self.telemetry.close()
        await self.bus.close()
        await self.fanout.close()
        await self.store.close()
        logger.info("Orchestrator stopped")

    async def ingest_detection(self, sensor_business_id: str, raw: Any,
                               metadata: Optional[Dict[str, Any]] = None) -> IngestionResult:
        """
        Normalize a detection, raise (or reuse) the sensor's ACTIVE alert and,
        for a new alert, try automatic dispatch.

        Raises:
            MalformedDetection: payload cannot be normalized.
            SensorNotFound: unknown sensor business id.
        """
        detection = detection_parser.normalize(raw, tz=self.settings.display_timezone)
        creation = await self.lifecycle.create(sensor_business_id, detection, metadata)

        if creation.skipped:
            return IngestionResult(alert=creation.alert, sensor=creation.sensor, skipped=True)

        await self.audit.record(
            AuditAction.ALERT_CREATED, SYSTEM_USER,
            resource=creation.alert.id,
            details={"sensorId": creation.sensor.sensor_id, "type": creation.alert.type},
        )

        try:
            outcome = await self.dispatch.auto_dispatch(creation.alert, creation.sensor)
        except DispatchError as e:
            logger.error(f"Auto dispatch for alert {creation.alert.id} failed: {e}")
            outcome = DispatchOutcome.skipped(e.message, creation.alert)
            await self.audit.record(
                AuditAction.DRONE_AUTO_DISPATCHED, SYSTEM_USER,
                resource=creation.alert.id, result=AuditResult.FAILURE,
                details={"error": e.message},
            )
        else:
            if outcome.dispatched:
                await self.audit.record(
                    AuditAction.DRONE_AUTO_DISPATCHED, SYSTEM_USER,
                    resource=creation.alert.id,
                    details={"droneId": outcome.drone.drone_id, "commandPublished": outcome.command_published},
                )
            elif creation.sensor.auto_dispatch:
                await self.audit.record(
                    AuditAction.DRONE_AUTO_DISPATCHED, SYSTEM_USER,
                    resource=creation.alert.id, result=AuditResult.SKIPPED,
                    details={"reason": outcome.reason},
                )

        alert = outcome.alert if outcome.dispatched else creation.alert
        return IngestionResult(alert=alert, sensor=creation.sensor, skipped=False, auto_dispatch=outcome)
