#!/usr/bin/env python3
"""
Sentinel Dispatch FastAPI Application

REST API and WebSocket feed for the alert lifecycle and drone dispatch core.

Endpoints:
- Detection ingestion from the VMS (POST /api/alerts/from-nx)
- Alert reads and operator actions (neutralise, neutralise-all, delete, send-drone)
- Operator drone commands (send, drop payload, recall, patrol)
- Flight history reads
- Audit log reads
- Live event feed (WS /ws)

Optional features:
- Operator authentication: set AUTH_ENABLED=true and JWT_ACCESS_SECRET in .env
- Audit to database: set AUDIT_TO_DATABASE=true
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import (
    APIRouter,
    Body,
    Depends,
    FastAPI,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from audit import AuditAction, AuditResult
from auth import is_auth_enabled, require_operator
from entities import AlertStatus, LatLon
from errors import DispatchError, DroneNotFound, FlightNotFound, InvalidInputError, SensorNotFound
from orchestrator import Orchestrator
from settings import DROP_PAYLOAD, PATROL, RECALL_DRONE, SEND_DRONE, Settings

logger = logging.getLogger(__name__)

router = APIRouter()


# Pydantic models

class SendDroneRequest(BaseModel):
    """Manual dispatch of a drone to an alert"""
    droneId: str = Field(..., min_length=1)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class NeutraliseRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class DroneCommandRequest(BaseModel):
    """Operator drone command"""
    droneId: str = Field(..., min_length=1)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    alertId: Optional[str] = None
    sensorId: Optional[str] = None


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _target(latitude: Optional[float], longitude: Optional[float]) -> Optional[LatLon]:
    if latitude is None and longitude is None:
        return None
    if latitude is None or longitude is None:
        raise InvalidInputError("latitude and longitude must be given together")
    return LatLon(latitude, longitude)


# =============================================================================
# Health
# =============================================================================

@router.get("/health")
async def health_check(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Health check endpoint for Docker healthcheck."""
    database = await orchestrator.store.ping()
    body = {
        "status": "healthy" if database else "unhealthy",
        "database": database,
        "mqtt": orchestrator.bus.connected,
        "websocketClients": orchestrator.fanout.connection_count,
        "auth": is_auth_enabled(orchestrator.settings),
    }
    return JSONResponse(status_code=200 if database else 503, content=body)


# =============================================================================
# Alerts
# =============================================================================

@router.post("/api/alerts/from-nx")
async def ingest_detection(
    request: Request,
    response: Response,
    payload: dict = Body(...),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """
    Ingest a VMS detection for a sensor.

    Body: {"sensorId": "...", "data": "Type:...;Confidence:...;TimestampUs:..."}
    or structured fields (type, confidence, timestampUs, message).
    Returns 201 with the new alert, or 200 with the sensor's existing
    ACTIVE alert and skipped=true.
    """
    sensor_id = payload.get("sensorId")
    if not sensor_id:
        raise InvalidInputError("sensorId is required")

    raw = {key: value for key, value in payload.items() if key not in ("sensorId", "metadata")}

    result = await orchestrator.ingest_detection(str(sensor_id), raw, metadata=payload.get("metadata"))
    response.status_code = 200 if result.skipped else 201
    return result.to_dict()


@router.get("/api/alerts")
async def list_alerts(
    status: Optional[str] = Query(None, description="ACTIVE, SENT or NEUTRALISED"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    skip: int = Query(0, ge=0),
    sortBy: str = Query("createdAt", pattern="^(createdAt|decidedAt)$"),
    sortOrder: str = Query("desc", pattern="^(asc|desc)$"),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """List alerts with pagination."""
    status_filter = None
    if status:
        try:
            status_filter = AlertStatus(status.upper())
        except ValueError:
            raise InvalidInputError(f"Unknown alert status: {status}")

    alerts, total = await orchestrator.lifecycle.list(
        status=status_filter, limit=limit, skip=skip, sort_by=sortBy, sort_order=sortOrder
    )
    return {
        "success": True,
        "alerts": [alert.to_dict() for alert in alerts],
        "pagination": {
            "total": total,
            "limit": limit,
            "skip": skip,
            "hasMore": skip + len(alerts) < total,
        },
    }


@router.get("/api/alerts/active")
async def list_active_alerts(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """All ACTIVE alerts, oldest first."""
    alerts = await orchestrator.lifecycle.list_active()
    return {"success": True, "alerts": [alert.to_dict() for alert in alerts], "count": len(alerts)}


@router.get("/api/alerts/by-sensor/{sensor_db_id}")
async def alerts_for_sensor(sensor_db_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    alerts = await orchestrator.lifecycle.history_for_sensor(sensor_db_id)
    return {"success": True, "alerts": [alert.to_dict() for alert in alerts], "count": len(alerts)}


@router.post("/api/alerts/neutralise-all")
async def neutralise_all_alerts(
    request: Request,
    body: Optional[NeutraliseRequest] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    operator: str = Depends(require_operator),
):
    """Neutralise every ACTIVE alert."""
    reason = body.reason if body else None
    ids = await orchestrator.lifecycle.neutralise_all(reason)
    await orchestrator.audit.record(
        AuditAction.ALERTS_NEUTRALISED_ALL, operator,
        details={"count": len(ids), "reason": reason},
        client_ip=_client_ip(request),
    )
    return {"success": True, "count": len(ids), "ids": ids}


@router.get("/api/alerts/{alert_id}")
async def get_alert(alert_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    alert = await orchestrator.lifecycle.get(alert_id)
    return {"success": True, "alert": alert.to_dict()}


@router.delete("/api/alerts/{alert_id}")
async def delete_alert(
    request: Request,
    alert_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    operator: str = Depends(require_operator),
):
    """Delete an alert in any status."""
    await orchestrator.lifecycle.delete(alert_id)
    await orchestrator.audit.record(
        AuditAction.ALERT_DELETED, operator, resource=alert_id, client_ip=_client_ip(request)
    )
    return {"success": True, "message": "Alert deleted", "id": alert_id}


@router.post("/api/alerts/{alert_id}/send-drone")
async def send_drone_to_alert(
    request: Request,
    alert_id: str,
    body: SendDroneRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    operator: str = Depends(require_operator),
):
    """
    Dispatch a drone to an ACTIVE alert.

    Target defaults to the alert's sensor position.
    """
    try:
        outcome = await orchestrator.dispatch.dispatch_manual(
            alert_id, body.droneId, _target(body.latitude, body.longitude)
        )
    except DispatchError as e:
        await orchestrator.audit.record(
            AuditAction.DRONE_DISPATCHED, operator, resource=alert_id,
            result=AuditResult.FAILURE, details={"droneId": body.droneId, "error": e.message},
            client_ip=_client_ip(request),
        )
        raise

    await orchestrator.audit.record(
        AuditAction.DRONE_DISPATCHED, operator, resource=alert_id,
        details={"droneId": body.droneId, "commandPublished": outcome.command_published},
        client_ip=_client_ip(request),
    )
    result = outcome.to_dict()
    result["success"] = True
    result["message"] = "Drone dispatched" if outcome.command_published else \
        "Drone dispatch recorded but the command was not delivered"
    return result


@router.post("/api/alerts/{alert_id}/neutralise")
async def neutralise_alert(
    request: Request,
    alert_id: str,
    body: Optional[NeutraliseRequest] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    operator: str = Depends(require_operator),
):
    reason = body.reason if body else None
    alert = await orchestrator.lifecycle.neutralise(alert_id, reason)
    await orchestrator.audit.record(
        AuditAction.ALERT_NEUTRALISED, operator, resource=alert_id,
        details={"reason": reason}, client_ip=_client_ip(request),
    )
    return {"success": True, "alert": alert.to_dict()}


# =============================================================================
# Drone commands
# =============================================================================

async def _drone_command(request: Request, event: str, body: DroneCommandRequest,
                         orchestrator: Orchestrator, operator: str) -> dict:
    outcome = await orchestrator.dispatch.send_command(
        event,
        body.droneId,
        target=_target(body.latitude, body.longitude),
        alert_id=body.alertId,
        sensor_id=body.sensorId,
    )
    await orchestrator.audit.record(
        AuditAction.DRONE_COMMAND_SENT, operator, resource=body.droneId,
        details={"event": event, "alertId": body.alertId, "commandPublished": outcome.command_published},
        client_ip=_client_ip(request),
    )
    result = outcome.to_dict()
    result["success"] = True
    return result


@router.post("/api/drone-command")
async def send_drone(
    request: Request,
    body: DroneCommandRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    operator: str = Depends(require_operator),
):
    return await _drone_command(request, SEND_DRONE, body, orchestrator, operator)


@router.post("/api/drone-command/dropPayload")
async def drop_payload(
    request: Request,
    body: DroneCommandRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    operator: str = Depends(require_operator),
):
    return await _drone_command(request, DROP_PAYLOAD, body, orchestrator, operator)


@router.post("/api/drone-command/recallDrone")
async def recall_drone(
    request: Request,
    body: DroneCommandRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    operator: str = Depends(require_operator),
):
    return await _drone_command(request, RECALL_DRONE, body, orchestrator, operator)


@router.post("/api/drone-command/patrol")
async def patrol(
    request: Request,
    body: DroneCommandRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    operator: str = Depends(require_operator),
):
    return await _drone_command(request, PATROL, body, orchestrator, operator)


# =============================================================================
# Flight history
# =============================================================================

async def _flight_page(orchestrator: Orchestrator, drone_db_id: Optional[str] = None,
                       sensor_id: Optional[str] = None, alert_id: Optional[str] = None,
                       limit: int = 100, skip: int = 0, sort_order: str = "desc") -> dict:
    flights, total = await orchestrator.store.list_flights(
        drone_db_id=drone_db_id, sensor_id=sensor_id, alert_id=alert_id,
        limit=limit, skip=skip, sort_order=sort_order,
    )
    return {
        "success": True,
        "flights": [flight.to_dict() for flight in flights],
        "pagination": {
            "total": total,
            "limit": limit,
            "skip": skip,
            "hasMore": skip + len(flights) < total,
        },
    }


async def _drone_db_id(orchestrator: Orchestrator, drone_id: str) -> str:
    drone = await orchestrator.store.get_drone_by_business_id(drone_id)
    if drone is None:
        raise DroneNotFound(drone_id)
    return drone.id


@router.get("/api/flight-history")
async def list_flight_history(
    droneId: Optional[str] = Query(None),
    sensorId: Optional[str] = Query(None),
    alertId: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    skip: int = Query(0, ge=0),
    sortOrder: str = Query("desc", pattern="^(asc|desc)$"),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    drone_db_id = await _drone_db_id(orchestrator, droneId) if droneId else None
    return await _flight_page(orchestrator, drone_db_id, sensorId, alertId, limit, skip, sortOrder)


@router.get("/api/flight-history/drone/{drone_id}")
async def flight_history_for_drone(
    drone_id: str,
    limit: int = Query(100, ge=1, le=1000),
    skip: int = Query(0, ge=0),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    drone_db_id = await _drone_db_id(orchestrator, drone_id)
    return await _flight_page(orchestrator, drone_db_id=drone_db_id, limit=limit, skip=skip)


@router.get("/api/flight-history/sensor/{sensor_id}")
async def flight_history_for_sensor(
    sensor_id: str,
    limit: int = Query(100, ge=1, le=1000),
    skip: int = Query(0, ge=0),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    if await orchestrator.store.get_sensor_by_business_id(sensor_id) is None:
        raise SensorNotFound(sensor_id)
    return await _flight_page(orchestrator, sensor_id=sensor_id, limit=limit, skip=skip)


@router.get("/api/flight-history/alert/{alert_id}")
async def flight_history_for_alert(alert_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    await orchestrator.lifecycle.get(alert_id)
    return await _flight_page(orchestrator, alert_id=alert_id)


@router.get("/api/flight-history/{flight_id}")
async def get_flight(flight_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    flight = await orchestrator.store.get_flight(flight_id)
    if flight is None:
        raise FlightNotFound(flight_id)
    return {"success": True, "flight": flight.to_dict()}


# =============================================================================
# Audit Log Endpoints (view-only)
# =============================================================================

@router.get("/api/audit/logs")
async def get_audit_logs(
    action: Optional[str] = Query(None, description="Filter by action type"),
    user: Optional[str] = Query(None, description="Filter by username"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    current_user: str = Depends(require_operator),
):
    """
    Query audit logs (requires authentication if enabled).

    Returns recent operator and system actions for review.
    """
    if not orchestrator.audit.to_database:
        return {"logs": [], "count": 0, "limit": limit,
                "message": "Audit logging to database not enabled"}

    try:
        action_enum = AuditAction(action) if action else None
    except ValueError:
        raise InvalidInputError(f"Unknown audit action: {action}")

    logs = await orchestrator.audit.query(action=action_enum, user=user, limit=limit)
    return {"logs": logs, "count": len(logs), "limit": limit}


# =============================================================================
# Live event feed
# =============================================================================

@router.websocket("/ws")
async def event_feed(websocket: WebSocket):
    """Broadcasts alert_active, alert_resolved, alert_deleted, drone_telemetry, mission_started."""
    fanout = websocket.app.state.orchestrator.fanout
    await fanout.connect(websocket)
    try:
        while True:
            # Inbound frames are ignored; reading detects the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        fanout.disconnect(websocket)


# =============================================================================
# Application factory
# =============================================================================

async def _dispatch_error_handler(request: Request, exc: DispatchError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({exc.category}): {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg', 'invalid input')}" if location else first.get("msg", "invalid input")
    return JSONResponse(status_code=400, content=InvalidInputError(message).to_dict())


def create_app(orchestrator: Optional[Orchestrator] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI app around an orchestrator (created from the environment if omitted)."""
    if orchestrator is None:
        settings = settings or Settings.from_env()
        orchestrator = Orchestrator.from_settings(settings)
    settings = orchestrator.settings

    # Configure logging
    logging.basicConfig(format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    logging.getLogger().setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await orchestrator.start()
        logger.info(f"Optional features: auth={is_auth_enabled(settings)}, "
                    f"audit_to_database={settings.audit_to_database}")
        try:
            yield
        finally:
            await orchestrator.close()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="Alert lifecycle and drone dispatch orchestration",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.settings = settings
    app.add_exception_handler(DispatchError, _dispatch_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.include_router(router)
    return app


app = create_app()


def main():
    import uvicorn
    uvicorn.run(
        app,
        host=os.environ.get("API_HOST", "0.0.0.0"),
        port=int(os.environ.get("API_PORT", "8090")),
    )


if __name__ == "__main__":
    main()
