"""
Error taxonomy for the dispatch core.

Every error carries a stable machine-readable ``code`` and the HTTP status
the API layer answers with.  Messages are safe to show to end users;
dependency failure detail belongs in the logs only.
"""

from __future__ import annotations


class DispatchError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DispatchError):
    """Malformed input or a missing context field for a transition."""

    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(DispatchError):
    code = "NOT_FOUND"
    status_code = 404


class InvalidStatusTransition(DispatchError):
    """Raised when a status change violates the state machine."""

    code = "INVALID_STATUS_TRANSITION"
    status_code = 409

    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot transition from {current} to {requested}")
        self.current = current
        self.requested = requested


class DriverUnavailable(DispatchError):
    code = "DRIVER_UNAVAILABLE"
    status_code = 409


class DeliveryUnavailable(DispatchError):
    code = "DELIVERY_UNAVAILABLE"
    status_code = 409


class DependencyUnavailable(DispatchError):
    """Cache or durable store unreachable."""

    code = "DEPENDENCY_UNAVAILABLE"
    status_code = 503

    def __init__(self, message: str = "A backing service is unavailable"):
        super().__init__(message)
