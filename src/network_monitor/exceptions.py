"""
Error taxonomy for the network monitor.

Every error carries a machine-readable code and the HTTP status class an
API layer would map it to. Only InfrastructureError (and its subclasses)
and ScanError are retryable.
"""

from __future__ import annotations

from typing import Any, Optional


class MonitorError(Exception):
    """Base exception for network monitor errors."""

    code = "INTERNAL_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        data = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(MonitorError):
    """Invalid input (bad target, interval, profile or identifier)."""
    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(MonitorError):
    """Requested snapshot or job does not exist."""
    code = "NOT_FOUND"
    http_status = 404


class ConflictError(MonitorError):
    """Record already exists."""
    code = "CONFLICT"
    http_status = 409


class WrongStateError(MonitorError):
    """Operation not allowed in the current lifecycle state."""
    code = "WRONG_STATE"
    http_status = 409


class InfrastructureError(MonitorError):
    """Transient failure in storage or another backing resource."""
    code = "INFRASTRUCTURE_ERROR"
    http_status = 503
    retryable = True


class ServiceUnavailableError(InfrastructureError):
    """Dependency temporarily unavailable; callers should retry later."""
    code = "SERVICE_UNAVAILABLE"
    retryable = False

    def __init__(
        self,
        message: str,
        retry_after: float = 0.0,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["retry_after"] = self.retry_after
        return data


class CircuitOpenError(ServiceUnavailableError):
    """Circuit breaker is open and rejecting calls."""
    pass


class ScanError(MonitorError):
    """Scanner invocation failed or timed out."""
    code = "SCAN_ERROR"
    http_status = 502
    retryable = True
