#!/usr/bin/env python3
"""
Sentinel Dispatch - Entity Store

SQLAlchemy (asyncio) store for areas, sensors, drones, alerts, flight
history and the audit log. Production runs on PostgreSQL through asyncpg;
tests run on SQLite through aiosqlite.

Concurrency rules:
- one ACTIVE alert per sensor is enforced by the partial unique index
  uq_alerts_one_active_per_sensor, not by application checks
- alert status changes are compare-and-swap updates
  (WHERE id = :id AND status = 'ACTIVE')
- a dispatch's flight-history row is inserted in the same transaction as
  the alert's ACTIVE -> SENT update
- every write transaction starts with its write statement, so SQLite
  writers queue on the busy timeout instead of deadlocking
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    event,
    func,
    select,
    text,
)
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from entities import Alert, AlertStatus, Area, Drone, FlightHistory, Sensor, as_utc
from errors import BusinessIdConflict, DuplicateActiveAlert, StoreUnavailable

logger = logging.getLogger(__name__)

ACTIVE_ALERT_INDEX = "uq_alerts_one_active_per_sensor"

# =============================================================================
# Schema
# =============================================================================

metadata = MetaData()

areas = Table(
    "areas",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("area_id", String(128), nullable=False, unique=True),
    Column("name", String(256), nullable=False),
    Column("latitude", Float),
    Column("longitude", Float),
)

sensors = Table(
    "sensors",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("sensor_id", String(128), nullable=False, unique=True),
    Column("name", String(256), nullable=False),
    Column("latitude", Float, nullable=False),
    Column("longitude", Float, nullable=False),
    Column("area_db_id", String(36), ForeignKey("areas.id", ondelete="SET NULL")),
    Column("auto_dispatch", Boolean, nullable=False, default=False),
)

drones = Table(
    "drones",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("drone_id", String(128), nullable=False, unique=True),
    Column("name", String(256), nullable=False),
    Column("drone_type", String(64)),
    # unique: an area owns at most one drone
    Column("area_db_id", String(36), ForeignKey("areas.id", ondelete="SET NULL"), unique=True),
    Column("drone_speed", Float),
    Column("target_altitude", Float),
    Column("max_altitude", Float),
    Column("min_battery_level", Float),
    Column("battery_fail_safe", String(64)),
    Column("gps_lost", String(64)),
    Column("telemetry_lost", String(64)),
    Column("usb_address", String(128)),
    Column("last_latitude", Float),
    Column("last_longitude", Float),
    Column("last_altitude", Float),
    Column("battery", Float),
    Column("drone_mode", String(64)),
    Column("last_telemetry_at", DateTime(timezone=True)),
)

alerts = Table(
    "alerts",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("sensor_db_id", String(36), ForeignKey("sensors.id", ondelete="CASCADE"), nullable=False),
    Column("sensor_id", String(128), nullable=False),
    Column("type", String(128), nullable=False),
    Column("message", Text, nullable=False),
    Column("confidence", Float, nullable=False, default=0.0),
    Column("detected_at", DateTime(timezone=True)),
    Column("detected_time", String(64)),
    Column("status", String(16), nullable=False),
    Column("decision", String(256)),
    Column("decided_at", DateTime(timezone=True)),
    Column("metadata_json", JSON),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index(
        ACTIVE_ALERT_INDEX,
        "sensor_db_id",
        unique=True,
        postgresql_where=text("status = 'ACTIVE'"),
        sqlite_where=text("status = 'ACTIVE'"),
    ),
    Index("ix_alerts_status_created_at", "status", "created_at"),
)

flight_history = Table(
    "flight_history",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("drone_db_id", String(36), ForeignKey("drones.id", ondelete="CASCADE"), nullable=False),
    Column("drone_id", String(128), nullable=False),
    Column("event", String(32), nullable=False),
    Column("sensor_id", String(128)),
    Column("alert_id", String(36), ForeignKey("alerts.id", ondelete="SET NULL")),
    Column("target_latitude", Float),
    Column("target_longitude", Float),
    Column("dispatched_at", DateTime(timezone=True), nullable=False),
    Index("ix_flight_history_dispatched_at", "dispatched_at"),
)

audit_log = Table(
    "audit_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Column("action", String(64), nullable=False),
    Column("result", String(16), nullable=False),
    Column("username", String(128), nullable=False),
    Column("resource", String(128)),
    Column("details", JSON),
    Column("client_ip", String(64)),
    Index("ix_audit_log_timestamp", "timestamp"),
)

ALERT_SORT_FIELDS = {
    "createdAt": alerts.c.created_at,
    "decidedAt": alerts.c.decided_at,
}


def _is_active_alert_violation(error: IntegrityError) -> bool:
    message = str(error.orig).lower()
    return ACTIVE_ALERT_INDEX in message or "alerts.sensor_db_id" in message


def _build_engine(database_url: str) -> AsyncEngine:
    """Create the async engine with pooling suited to the backend."""
    if database_url.startswith("sqlite"):
        engine = create_async_engine(
            database_url,
            poolclass=NullPool,
            connect_args={"timeout": 30},
            echo=False,
        )

        @event.listens_for(engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_async_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600,
        echo=False,
    )


class EntityStore:
    """Async persistence for the dispatch core."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine = _build_engine(database_url)
        logger.info("Entity store engine created")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def init_schema(self):
        """Create tables and indexes that do not exist yet."""
        async with self._guard("init_schema"):
            async with self.engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
        logger.info("Entity store schema ready")

    async def ping(self) -> bool:
        """Test database connectivity"""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database connection test failed: {e}")
            return False

    async def close(self):
        """Dispose of the connection pool"""
        await self.engine.dispose()
        logger.info("Database connection pool closed")

    @asynccontextmanager
    async def _guard(self, operation: str):
        try:
            yield
        except (OperationalError, InterfaceError) as e:
            logger.error(f"Store operation {operation} failed: {e}")
            raise StoreUnavailable(f"Store unavailable during {operation}") from e

    async def _fetch_one(self, operation: str, stmt):
        async with self._guard(operation):
            async with self.engine.connect() as conn:
                return (await conn.execute(stmt)).first()

    async def _fetch_all(self, operation: str, stmt):
        async with self._guard(operation):
            async with self.engine.connect() as conn:
                return (await conn.execute(stmt)).all()

    async def _insert_unique(self, operation: str, table: Table, values: Dict[str, Any], label: str):
        try:
            async with self._guard(operation):
                async with self.engine.begin() as conn:
                    await conn.execute(table.insert().values(**values))
        except IntegrityError as e:
            raise BusinessIdConflict(f"{label} already exists") from e

    # =========================================================================
    # Areas, sensors, drones (seeded by admin tooling, read by the core)
    # =========================================================================

    async def add_area(self, area: Area) -> Area:
        values = {"id": area.id, "area_id": area.area_id, "name": area.name,
                  "latitude": area.latitude, "longitude": area.longitude}
        await self._insert_unique("add_area", areas, values, f"Area {area.area_id}")
        return area

    async def add_sensor(self, sensor: Sensor) -> Sensor:
        values = {
            "id": sensor.id,
            "sensor_id": sensor.sensor_id,
            "name": sensor.name,
            "latitude": sensor.latitude,
            "longitude": sensor.longitude,
            "area_db_id": sensor.area_db_id,
            "auto_dispatch": sensor.auto_dispatch,
        }
        await self._insert_unique("add_sensor", sensors, values, f"Sensor {sensor.sensor_id}")
        return sensor

    async def add_drone(self, drone: Drone) -> Drone:
        values = {column.name: getattr(drone, column.name) for column in drones.columns}
        await self._insert_unique("add_drone", drones, values, f"Drone {drone.drone_id} or its area assignment")
        return drone

    async def get_area(self, area_db_id: str) -> Optional[Area]:
        row = await self._fetch_one("get_area", select(areas).where(areas.c.id == area_db_id))
        return Area(**row._mapping) if row else None

    async def get_sensor(self, sensor_db_id: str) -> Optional[Sensor]:
        row = await self._fetch_one("get_sensor", select(sensors).where(sensors.c.id == sensor_db_id))
        return Sensor(**row._mapping) if row else None

    async def get_sensor_by_business_id(self, sensor_id: str) -> Optional[Sensor]:
        row = await self._fetch_one(
            "get_sensor_by_business_id", select(sensors).where(sensors.c.sensor_id == sensor_id)
        )
        return Sensor(**row._mapping) if row else None

    async def get_drone(self, drone_db_id: str) -> Optional[Drone]:
        row = await self._fetch_one("get_drone", select(drones).where(drones.c.id == drone_db_id))
        return self._drone_from_row(row) if row else None

    async def get_drone_by_business_id(self, drone_id: str) -> Optional[Drone]:
        row = await self._fetch_one(
            "get_drone_by_business_id", select(drones).where(drones.c.drone_id == drone_id)
        )
        return self._drone_from_row(row) if row else None

    async def get_drone_for_area(self, area_db_id: str) -> Optional[Drone]:
        row = await self._fetch_one(
            "get_drone_for_area", select(drones).where(drones.c.area_db_id == area_db_id)
        )
        return self._drone_from_row(row) if row else None

    async def update_drone_state(
        self,
        drone_db_id: str,
        latitude: Optional[float],
        longitude: Optional[float],
        altitude: Optional[float],
        battery: Optional[float],
        mode: Optional[str],
        at: datetime,
    ) -> bool:
        """Overwrite a drone's last-known telemetry fields."""
        stmt = (
            drones.update()
            .where(drones.c.id == drone_db_id)
            .values(
                last_latitude=latitude,
                last_longitude=longitude,
                last_altitude=altitude,
                battery=battery,
                drone_mode=mode,
                last_telemetry_at=at,
            )
        )
        async with self._guard("update_drone_state"):
            async with self.engine.begin() as conn:
                result = await conn.execute(stmt)
        return result.rowcount == 1

    @staticmethod
    def _drone_from_row(row) -> Drone:
        values = dict(row._mapping)
        values["last_telemetry_at"] = as_utc(values["last_telemetry_at"])
        return Drone(**values)

    # =========================================================================
    # Alerts
    # =========================================================================

    @staticmethod
    def _alert_values(alert: Alert) -> Dict[str, Any]:
        return {
            "id": alert.id,
            "sensor_db_id": alert.sensor_db_id,
            "sensor_id": alert.sensor_id,
            "type": alert.type,
            "message": alert.message,
            "confidence": alert.confidence,
            "detected_at": alert.detected_at,
            "detected_time": alert.detected_time,
            "status": alert.status.value,
            "decision": alert.decision,
            "decided_at": alert.decided_at,
            "metadata_json": alert.metadata,
            "created_at": alert.created_at,
        }

    @staticmethod
    def _alert_from_row(row) -> Alert:
        values = dict(row._mapping)
        return Alert(
            id=values["id"],
            sensor_db_id=values["sensor_db_id"],
            sensor_id=values["sensor_id"],
            type=values["type"],
            message=values["message"],
            confidence=values["confidence"],
            detected_at=as_utc(values["detected_at"]),
            detected_time=values["detected_time"],
            status=AlertStatus(values["status"]),
            decision=values["decision"],
            decided_at=as_utc(values["decided_at"]),
            metadata=values["metadata_json"],
            created_at=as_utc(values["created_at"]),
        )

    async def insert_active_alert(self, alert: Alert) -> Alert:
        """
        Insert a new ACTIVE alert.

        Raises:
            DuplicateActiveAlert: the sensor already has an ACTIVE alert.
        """
        try:
            async with self._guard("insert_active_alert"):
                async with self.engine.begin() as conn:
                    await conn.execute(alerts.insert().values(**self._alert_values(alert)))
        except IntegrityError as e:
            if _is_active_alert_violation(e):
                raise DuplicateActiveAlert(alert.sensor_db_id) from e
            raise
        return alert

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        row = await self._fetch_one("get_alert", select(alerts).where(alerts.c.id == alert_id))
        return self._alert_from_row(row) if row else None

    async def find_active_alert(self, sensor_db_id: str) -> Optional[Alert]:
        stmt = select(alerts).where(
            alerts.c.sensor_db_id == sensor_db_id,
            alerts.c.status == AlertStatus.ACTIVE.value,
        )
        row = await self._fetch_one("find_active_alert", stmt)
        return self._alert_from_row(row) if row else None

    async def transition_alert(
        self,
        alert_id: str,
        status: AlertStatus,
        decision: str,
        decided_at: datetime,
        flight: Optional[FlightHistory] = None,
    ) -> Optional[Alert]:
        """
        Compare-and-swap an ACTIVE alert into a terminal status.

        When `flight` is given it is inserted in the same transaction.
        Returns the updated alert, or None when no ACTIVE alert with that id
        exists (nothing is written in that case).
        """
        stmt = (
            alerts.update()
            .where(alerts.c.id == alert_id, alerts.c.status == AlertStatus.ACTIVE.value)
            .values(status=status.value, decision=decision, decided_at=decided_at)
            .returning(*alerts.c)
        )
        async with self._guard("transition_alert"):
            async with self.engine.begin() as conn:
                row = (await conn.execute(stmt)).first()
                if row is None:
                    return None
                if flight is not None:
                    await conn.execute(flight_history.insert().values(**self._flight_values(flight)))
        return self._alert_from_row(row)

    async def neutralise_all_active(self, decision: str, decided_at: datetime) -> List[str]:
        """Bulk-neutralise every ACTIVE alert in one statement; returns affected ids."""
        stmt = (
            alerts.update()
            .where(alerts.c.status == AlertStatus.ACTIVE.value)
            .values(status=AlertStatus.NEUTRALISED.value, decision=decision, decided_at=decided_at)
            .returning(alerts.c.id)
        )
        async with self._guard("neutralise_all_active"):
            async with self.engine.begin() as conn:
                rows = (await conn.execute(stmt)).all()
        return [row.id for row in rows]

    async def delete_alert(self, alert_id: str) -> bool:
        async with self._guard("delete_alert"):
            async with self.engine.begin() as conn:
                result = await conn.execute(alerts.delete().where(alerts.c.id == alert_id))
        return result.rowcount == 1

    async def list_alerts(
        self,
        status: Optional[AlertStatus] = None,
        limit: int = 100,
        skip: int = 0,
        sort_by: str = "createdAt",
        sort_order: str = "desc",
    ) -> Tuple[List[Alert], int]:
        """Page through alerts; returns (page, total matching)."""
        conditions = []
        if status is not None:
            conditions.append(alerts.c.status == status.value)

        sort_column = ALERT_SORT_FIELDS.get(sort_by, alerts.c.created_at)
        ordering = sort_column.asc() if sort_order == "asc" else sort_column.desc()

        page_stmt = select(alerts).where(*conditions).order_by(ordering).offset(skip).limit(limit)
        count_stmt = select(func.count()).select_from(alerts).where(*conditions)

        async with self._guard("list_alerts"):
            async with self.engine.connect() as conn:
                rows = (await conn.execute(page_stmt)).all()
                total = (await conn.execute(count_stmt)).scalar_one()
        return [self._alert_from_row(row) for row in rows], total

    async def list_active_alerts(self) -> List[Alert]:
        stmt = (
            select(alerts)
            .where(alerts.c.status == AlertStatus.ACTIVE.value)
            .order_by(alerts.c.created_at.asc())
        )
        rows = await self._fetch_all("list_active_alerts", stmt)
        return [self._alert_from_row(row) for row in rows]

    async def list_alerts_for_sensor(self, sensor_db_id: str) -> List[Alert]:
        stmt = (
            select(alerts)
            .where(alerts.c.sensor_db_id == sensor_db_id)
            .order_by(alerts.c.created_at.desc())
        )
        rows = await self._fetch_all("list_alerts_for_sensor", stmt)
        return [self._alert_from_row(row) for row in rows]

    async def count_alerts(self, sensor_db_id: str, status: Optional[AlertStatus] = None) -> int:
        conditions = [alerts.c.sensor_db_id == sensor_db_id]
        if status is not None:
            conditions.append(alerts.c.status == status.value)
        row = await self._fetch_one(
            "count_alerts", select(func.count()).select_from(alerts).where(*conditions)
        )
        return row[0]

    # =========================================================================
    # Flight history
    # =========================================================================

    @staticmethod
    def _flight_values(flight: FlightHistory) -> Dict[str, Any]:
        return {
            "id": flight.id,
            "drone_db_id": flight.drone_db_id,
            "drone_id": flight.drone_id,
            "event": flight.event,
            "sensor_id": flight.sensor_id,
            "alert_id": flight.alert_id,
            "target_latitude": flight.target_latitude,
            "target_longitude": flight.target_longitude,
            "dispatched_at": flight.dispatched_at,
        }

    @staticmethod
    def _flight_from_row(row) -> FlightHistory:
        values = dict(row._mapping)
        values["dispatched_at"] = as_utc(values["dispatched_at"])
        return FlightHistory(**values)

    async def insert_flight(self, flight: FlightHistory) -> FlightHistory:
        async with self._guard("insert_flight"):
            async with self.engine.begin() as conn:
                await conn.execute(flight_history.insert().values(**self._flight_values(flight)))
        return flight

    async def get_flight(self, flight_id: str) -> Optional[FlightHistory]:
        row = await self._fetch_one(
            "get_flight", select(flight_history).where(flight_history.c.id == flight_id)
        )
        return self._flight_from_row(row) if row else None

    async def list_flights(
        self,
        drone_db_id: Optional[str] = None,
        sensor_id: Optional[str] = None,
        alert_id: Optional[str] = None,
        limit: int = 100,
        skip: int = 0,
        sort_order: str = "desc",
    ) -> Tuple[List[FlightHistory], int]:
        conditions = []
        if drone_db_id:
            conditions.append(flight_history.c.drone_db_id == drone_db_id)
        if sensor_id:
            conditions.append(flight_history.c.sensor_id == sensor_id)
        if alert_id:
            conditions.append(flight_history.c.alert_id == alert_id)

        column = flight_history.c.dispatched_at
        ordering = column.asc() if sort_order == "asc" else column.desc()
        page_stmt = select(flight_history).where(*conditions).order_by(ordering).offset(skip).limit(limit)
        count_stmt = select(func.count()).select_from(flight_history).where(*conditions)

        async with self._guard("list_flights"):
            async with self.engine.connect() as conn:
                rows = (await conn.execute(page_stmt)).all()
                total = (await conn.execute(count_stmt)).scalar_one()
        return [self._flight_from_row(row) for row in rows], total

    # =========================================================================
    # Audit log
    # =========================================================================

    async def insert_audit_event(self, event: Dict[str, Any]):
        values = {
            "timestamp": event["timestamp"],
            "action": event["action"],
            "result": event["result"],
            "username": event["user"],
            "resource": event.get("resource"),
            "details": event.get("details") or {},
            "client_ip": event.get("client_ip"),
        }
        async with self._guard("insert_audit_event"):
            async with self.engine.begin() as conn:
                await conn.execute(audit_log.insert().values(**values))

    async def list_audit_events(
        self,
        action: Optional[str] = None,
        user: Optional[str] = None,
        resource: Optional[str] = None,
        limit: int = 100,
    ) -> List[dict]:
        conditions = []
        if action:
            conditions.append(audit_log.c.action == action)
        if user:
            conditions.append(audit_log.c.username == user)
        if resource:
            conditions.append(audit_log.c.resource == resource)
        stmt = select(audit_log).where(*conditions).order_by(audit_log.c.timestamp.desc()).limit(limit)
        rows = await self._fetch_all("list_audit_events", stmt)
        events = []
        for row in rows:
            values = dict(row._mapping)
            values["timestamp"] = as_utc(values["timestamp"]).isoformat()
            events.append(values)
        return events
