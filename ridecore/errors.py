"""
Ride Errors
Failure taxonomy shared by the store, the dispatch engine and the estimator.
Every error carries a stable machine code and a message the apps can show as-is.
"""

from typing import Optional


class RideError(Exception):
    """Base class for every recoverable ride-core failure"""

    code = "ride_error"
    http_status = 400

    def __init__(self, message: str, ride_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.ride_id = ride_id

    def to_dict(self) -> dict:
        return {"success": False, "error": self.code, "message": self.message}


class ValidationError(RideError):
    """Malformed ride creation or update input"""

    code = "validation_error"
    http_status = 422


class NotFound(RideError):
    code = "not_found"
    http_status = 404

    def __init__(self, ride_id: str, message: Optional[str] = None):
        super().__init__(message or f"Ride {ride_id} was not found", ride_id)


class Forbidden(RideError):
    """Actor is not a party allowed to issue this command"""

    code = "forbidden"
    http_status = 403


class InvalidTransition(RideError):
    """Requested status change is not an edge of the lifecycle"""

    code = "invalid_transition"
    http_status = 409

    def __init__(self, ride_id: str, current: str, command: str):
        super().__init__(
            f"Cannot {command} a ride that is {current.replace('_', ' ')}", ride_id
        )
        self.current = current
        self.command = command


class PreconditionFailed(RideError):
    code = "precondition_failed"
    http_status = 412


class Conflict(RideError):
    """Record changed underneath the caller; re-read and re-validate"""

    code = "conflict"
    http_status = 409


class ProviderError(RideError):
    """Routing or geocoding provider failure"""

    code = "provider_error"
    http_status = 502

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable
        if retryable:
            self.http_status = 503
