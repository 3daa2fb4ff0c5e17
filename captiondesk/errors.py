"""Domain exceptions surfaced by the lifecycle, storage and billing layers."""
from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "CaptionDeskError",
    "InvalidDuration",
    "UnknownAccount",
    "NotFound",
    "InvalidTransition",
    "UpgradeRequired",
    "UpstreamUnavailable",
    "BillingNotConfigured",
]


class CaptionDeskError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500
    error = "internal_error"

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.error, "detail": self.message}
        payload.update(self.extra)
        return payload


class InvalidDuration(CaptionDeskError):
    status_code = 400
    error = "invalid_duration"


class UnknownAccount(CaptionDeskError):
    status_code = 404
    error = "unknown_account"

    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account {account_id!r} not found")
        self.account_id = account_id


class NotFound(CaptionDeskError):
    status_code = 404
    error = "job_not_found"

    def __init__(self, job_id: Any) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidTransition(CaptionDeskError):
    """Raised when a status change is not allowed from the job's current state."""

    status_code = 409
    error = "invalid_transition"

    def __init__(self, message: str, *, current: Optional[str] = None, requested: Optional[str] = None) -> None:
        extra: Dict[str, Any] = {}
        if current is not None:
            extra["current_status"] = current
        if requested is not None:
            extra["requested_status"] = requested
        super().__init__(message, **extra)
        self.current = current
        self.requested = requested


class UpgradeRequired(CaptionDeskError):
    status_code = 403
    error = "upgrade_required"

    def __init__(self, message: str = "Usage limit would be exceeded. Please upgrade to continue.") -> None:
        super().__init__(message, requires_upgrade=True)


class UpstreamUnavailable(CaptionDeskError):
    """A persistence, pipeline or payment service call failed."""

    status_code = 503
    error = "upstream_unavailable"


class BillingNotConfigured(CaptionDeskError):
    status_code = 503
    error = "billing_not_configured"
