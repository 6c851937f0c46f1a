"""
Centralized constants for the reservation-expiration scheduler.

This module is the single source of truth for status values, notification
type tags, retry defaults and logging limits used across the package.

Usage:
    from fleet_expiry.constants import ReservationStatus, RetryDefaults

Status values match the values stored by the booking service, so they can be
written to and compared against persisted rows directly.
"""
from __future__ import annotations

from enum import StrEnum
from typing import Final


# =============================================================================
# Domain Status Values
# =============================================================================

class ReservationStatus(StrEnum):
    """Lifecycle states of a reservation (booking)."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    CONVERTED = "converted"
    EXPIRED = "expired"


# Reservations the scheduler may move to EXPIRED
EXPIRABLE_STATUSES: Final[frozenset[ReservationStatus]] = frozenset({
    ReservationStatus.PENDING,
    ReservationStatus.CONFIRMED,
})

# Reservations that hold a claim on their vehicle
ACTIVE_CLAIM_STATUSES: Final[frozenset[ReservationStatus]] = frozenset({
    ReservationStatus.PENDING,
    ReservationStatus.CONFIRMED,
    ReservationStatus.CONVERTED,
})


class VehicleStatus(StrEnum):
    """Availability states of a vehicle."""

    AVAILABLE = "available"
    RESERVED = "reserved"
    UNAVAILABLE = "unavailable"
    ARCHIVED = "archived"


class NotificationType(StrEnum):
    """Notification type tags written by the scheduler."""

    BOOKING_EXPIRED = "booking-expired"
    BOOKINGS_EXPIRED_ADMIN = "bookings-expired-admin"


class NotificationStatus(StrEnum):
    NEW = "new"
    SEEN = "seen"


class UserRole(StrEnum):
    ADMIN = "admin"
    EMPLOYEE = "employee"
    USER = "user"


# Event name used for every real-time push
PUSH_EVENT_NOTIFICATION: Final[str] = "receiveNotification"


# =============================================================================
# Scheduler Defaults
# =============================================================================

class SchedulerDefaults:
    """Defaults for the expiration trigger and batching."""

    # Every hour at minute 0
    CRON_EXPRESSION: Final[str] = "0 * * * *"
    BATCH_SIZE: Final[int] = 100
    TIMEZONE: Final[str] = "UTC"
    MISFIRE_GRACE_SECONDS: Final[int] = 60 * 5
    JOB_ID: Final[str] = "booking_expiration"

    # Run lease
    LEASE_KEY: Final[str] = "fleet:locks:booking-expiration"
    LEASE_TTL_SECONDS: Final[int] = 60 * 60


class RetryDefaults:
    """Retry configuration for store writes and notification delivery."""

    MAX_RETRIES: Final[int] = 3
    BASE_DELAY_MS: Final[int] = 1000
    MAX_DELAY_MS: Final[int] = 60_000
    EXPONENTIAL_BASE: Final[float] = 2.0


class BackoffStrategy(StrEnum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"


# =============================================================================
# Logging
# =============================================================================

class LoggingConfig:
    """Logging-related constants."""

    # Field names whose values are secrets and are fully replaced
    SENSITIVE_FIELDS: Final[frozenset[str]] = frozenset({
        "password",
        "secret",
        "token",
        "api_key",
        "secret_key",
        "access_token",
        "refresh_token",
        "authorization",
        "credential",
        "credentials",
        "database_url",
        "redis_url",
        "dsn",
    })

    # Field names holding reservation reference codes, masked to a suffix
    REFERENCE_FIELDS: Final[frozenset[str]] = frozenset({
        "reference",
        "booking_reference",
        "references",
    })

    MASK_PATTERN: Final[str] = "***REDACTED***"
    REFERENCE_MASK_PREFIX: Final[str] = "***"
    REFERENCE_VISIBLE_CHARS: Final[int] = 4

    MAX_LOG_MESSAGE_LENGTH: Final[int] = 10000
