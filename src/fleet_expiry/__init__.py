"""
Reservation-expiration scheduler.

Finds provisional vehicle reservations whose hold deadline has passed, moves
them to EXPIRED, releases vehicles left without an active claim, and notifies
the booking's creator and the fleet admins.
"""
from .config import ExpirySettings, load_settings, load_settings_or_fail
from .constants import (
    BackoffStrategy,
    NotificationType,
    ReservationStatus,
    UserRole,
    VehicleStatus,
)
from .exceptions import (
    ConfigurationError,
    ExpirationFetchError,
    FleetExpiryError,
    InvalidTransitionError,
    RunInProgressError,
    StoreError,
)
from .expirer import ExpireResult, ExpireStatus, ReservationExpirer
from .finder import ExpirationFinder
from .lease import MemoryRunLease, RedisRunLease, RunLease
from .models import Notification, ProcessRun, Reservation, RunStatus, User, Vehicle
from .notifier import ExpirationNotifier
from .orchestrator import ExpirationOrchestrator, RunState
from .push import ConnectionManager, NullPushChannel, PushChannel, RedisPushChannel
from .reconciler import AvailabilityReconciler, ReconcileResult, ReconcileStatus
from .retry import RetryOutcome, RetryPolicy, retry_call
from .scheduler import ExpirationScheduler
from .service import ExpiryService, build_orchestrator, build_service

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # Config
    "ExpirySettings",
    "load_settings",
    "load_settings_or_fail",
    # Constants
    "BackoffStrategy",
    "NotificationType",
    "ReservationStatus",
    "UserRole",
    "VehicleStatus",
    # Errors
    "FleetExpiryError",
    "ConfigurationError",
    "StoreError",
    "ExpirationFetchError",
    "InvalidTransitionError",
    "RunInProgressError",
    # Models
    "Reservation",
    "Vehicle",
    "User",
    "Notification",
    "ProcessRun",
    "RunStatus",
    # Pipeline
    "ExpirationFinder",
    "ReservationExpirer",
    "ExpireResult",
    "ExpireStatus",
    "AvailabilityReconciler",
    "ReconcileResult",
    "ReconcileStatus",
    "ExpirationNotifier",
    "ExpirationOrchestrator",
    "RunState",
    # Infrastructure
    "RunLease",
    "MemoryRunLease",
    "RedisRunLease",
    "PushChannel",
    "NullPushChannel",
    "ConnectionManager",
    "RedisPushChannel",
    "RetryPolicy",
    "RetryOutcome",
    "retry_call",
    "ExpirationScheduler",
    "ExpiryService",
    "build_service",
    "build_orchestrator",
]
