"""Exception hierarchy for the reservation-expiration scheduler.

All scheduler-specific exceptions inherit from FleetExpiryError, enabling:
- Consistent handling at the trigger layer (cron callback, CLI)
- Machine-readable error codes in logs and run reports
- Structured details that survive into the process report

Usage:
    from fleet_expiry.exceptions import ExpirationFetchError, StoreError

    try:
        rows = await store.list_expirable(now, offset, limit)
    except StoreError as e:
        raise ExpirationFetchError("Failed to fetch page", offset=offset) from e
"""
from __future__ import annotations

from typing import Any, Optional


class FleetExpiryError(Exception):
    """Base exception for all scheduler errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "STORE_ERROR")
        details: Optional additional context
    """

    error_code: str = "FLEET_EXPIRY_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to report format."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class ConfigurationError(FleetExpiryError):
    """Settings failed validation at startup."""

    error_code = "CONFIGURATION_ERROR"


class StoreError(FleetExpiryError):
    """A store read or write failed."""

    error_code = "STORE_ERROR"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if operation:
            details["operation"] = operation
        super().__init__(message, details=details)


class ExpirationFetchError(StoreError):
    """Fetching a page of expirable reservations failed. Aborts the run."""

    error_code = "EXPIRATION_FETCH_FAILED"

    def __init__(
        self,
        message: str,
        offset: int = 0,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["offset"] = offset
        super().__init__(message, operation="list_expirable", details=details)


class InvalidTransitionError(FleetExpiryError):
    """A reservation in a terminal state was asked to change status."""

    error_code = "INVALID_TRANSITION"

    def __init__(self, reservation_id: str, from_status: str, to_status: str) -> None:
        super().__init__(
            f"Reservation '{reservation_id}' cannot move from {from_status} to {to_status}",
            details={
                "reservation_id": reservation_id,
                "from_status": from_status,
                "to_status": to_status,
            },
        )


class RunInProgressError(FleetExpiryError):
    """Another expiration run holds the run lease."""

    error_code = "RUN_IN_PROGRESS"

    def __init__(self, lease_key: str) -> None:
        super().__init__(
            "An expiration run is already in progress",
            details={"lease_key": lease_key},
        )


__all__ = [
    "FleetExpiryError",
    "ConfigurationError",
    "StoreError",
    "ExpirationFetchError",
    "InvalidTransitionError",
    "RunInProgressError",
]
