#!/usr/bin/env python3
"""
Sentinel Dispatch - Error Taxonomy

Every failure the orchestrator reports belongs to one of five categories:

- NotFound: sensor / drone / alert / flight missing
- Conflict: duplicate active alert, lost transition race, business-id collision
- InvalidInput: missing or malformed fields, malformed detection payload
- PreconditionFailed: dispatch attempted on a non-ACTIVE alert
- DownstreamUnavailable: store unavailable (a failed bus publish is reported,
  not raised)

The HTTP layer maps the category to a status code; nothing here is fatal
to the process.
"""


class DispatchError(Exception):
    """Base class for all orchestrator errors."""
    category = "Error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "code": self.category}


# =============================================================================
# Categories
# =============================================================================

class NotFoundError(DispatchError):
    category = "NotFound"
    status_code = 404


class ConflictError(DispatchError):
    category = "Conflict"
    status_code = 409


class InvalidInputError(DispatchError):
    category = "InvalidInput"
    status_code = 400


class PreconditionFailedError(DispatchError):
    category = "PreconditionFailed"
    status_code = 412


class DownstreamUnavailableError(DispatchError):
    category = "DownstreamUnavailable"
    status_code = 503


# =============================================================================
# Concrete errors
# =============================================================================

class SensorNotFound(NotFoundError):
    def __init__(self, sensor_id: str):
        super().__init__(f"Sensor with sensorId {sensor_id} not found")
        self.sensor_id = sensor_id


class DroneNotFound(NotFoundError):
    def __init__(self, drone_id: str):
        super().__init__(f"Drone {drone_id} not found")
        self.drone_id = drone_id


class AlertNotFound(NotFoundError):
    def __init__(self, alert_id: str):
        super().__init__(f"Alert {alert_id} not found")
        self.alert_id = alert_id


class FlightNotFound(NotFoundError):
    def __init__(self, flight_id: str):
        super().__init__(f"Flight history {flight_id} not found")
        self.flight_id = flight_id


class DuplicateActiveAlert(ConflictError):
    """Raised by the store when the one-active-alert-per-sensor index rejects an insert."""

    def __init__(self, sensor_db_id: str):
        super().__init__(f"Sensor {sensor_db_id} already has an ACTIVE alert")
        self.sensor_db_id = sensor_db_id


class AlertNotActiveOrNotFound(ConflictError):
    """The compare-and-swap on an alert's status matched zero rows."""

    def __init__(self, alert_id: str):
        super().__init__(f"Alert {alert_id} not found or not ACTIVE")
        self.alert_id = alert_id


class BusinessIdConflict(ConflictError):
    pass


class MalformedDetection(InvalidInputError):
    pass


class InvalidCommand(InvalidInputError):
    pass


class AlertNotActive(PreconditionFailedError):
    def __init__(self, alert_id: str, status: str):
        super().__init__(f"Only ACTIVE alerts can dispatch a drone (alert {alert_id} is {status})")
        self.alert_id = alert_id
        self.status = status


class StoreUnavailable(DownstreamUnavailableError):
    pass
