from __future__ import annotations


class DispatchError(Exception):
    """Base exception for dispatch operations."""

    code = "dispatch_error"
    http_status = 400

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code


class Unauthenticated(DispatchError):
    code = "unauthenticated"
    http_status = 401


class Unauthorized(DispatchError):
    code = "unauthorized"
    http_status = 403


class NotFound(DispatchError):
    code = "not_found"
    http_status = 404


class PreconditionFailed(DispatchError):
    code = "precondition_failed"
    http_status = 400


class InvalidTransition(DispatchError):
    code = "invalid_transition"
    http_status = 409

    def __init__(self, current: str, requested: str):
        super().__init__(f"Invalid transition from {current} to {requested}")
        self.current = current
        self.requested = requested


class RaceLost(DispatchError):
    code = "race_lost"
    http_status = 409


class StoreFailure(DispatchError):
    code = "store_failure"
    http_status = 503
