"""Domain records for reservation expiration."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import StrEnum
from typing import Any, Optional
from uuid import uuid4

from .constants import (
    EXPIRABLE_STATUSES,
    NotificationStatus,
    NotificationType,
    ReservationStatus,
    UserRole,
    VehicleStatus,
)
from .exceptions import InvalidTransitionError
from .logging import mask_reference


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Vehicle:
    """A fleet vehicle. The scheduler only ever writes ``status``."""
    id: str
    status: str = VehicleStatus.AVAILABLE
    manufacturer: str = ""
    model: str = ""
    license_plate: Optional[str] = None

    @property
    def descriptor(self) -> str:
        """Human-readable name used in notification text."""
        name = f"{self.manufacturer} {self.model}".strip()
        return name or f"vehicle {self.id}"

    def is_available(self) -> bool:
        return self.status == VehicleStatus.AVAILABLE


@dataclass
class Reservation:
    """A provisional, time-boxed claim on a vehicle."""
    id: str
    reference: str
    customer_id: Optional[str]
    vehicle_id: str
    start_date: date
    end_date: date
    hold_deadline: datetime
    created_by: str
    status: ReservationStatus = ReservationStatus.PENDING
    vehicle: Optional[Vehicle] = None
    updated_at: Optional[datetime] = None

    def is_transitionable(self) -> bool:
        """Whether the scheduler may still move this reservation to EXPIRED."""
        return self.status in EXPIRABLE_STATUSES

    def is_past_deadline(self, now: datetime) -> bool:
        return self.hold_deadline < now

    def mark_expired(self, now: Optional[datetime] = None) -> None:
        """Transition to EXPIRED. Terminal reservations are rejected."""
        if not self.is_transitionable():
            raise InvalidTransitionError(
                self.id, str(self.status), str(ReservationStatus.EXPIRED)
            )
        self.status = ReservationStatus.EXPIRED
        self.updated_at = now or _utcnow()


@dataclass
class User:
    id: str
    role: UserRole = UserRole.USER
    name: Optional[str] = None


@dataclass
class Notification:
    """A message addressed to one user."""
    recipient_id: str
    type: NotificationType
    message: str
    status: NotificationStatus = NotificationStatus.NEW
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=_utcnow)

    def to_payload(self, **extra: Any) -> dict[str, Any]:
        """Body pushed over the real-time channel."""
        payload: dict[str, Any] = {
            "id": self.id,
            "recipientId": self.recipient_id,
            "type": str(self.type),
            "message": self.message,
            "status": str(self.status),
            "createdAt": self.created_at.isoformat(),
        }
        payload.update(extra)
        return payload


class RunStatus(StrEnum):
    RUNNING = "running"
    NOTHING_TO_DO = "nothing_to_do"
    COMPLETED = "completed"
    COMPLETED_WITH_FAILURES = "completed_with_failures"
    ABORTED = "aborted"


@dataclass
class RunFailure:
    reservation_id: str
    reference: str
    error: str

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.reservation_id,
            "reference": mask_reference(self.reference),
            "error": self.error,
        }


@dataclass
class ProcessRun:
    """One invocation of the expiration pipeline.

    ``run_id`` is the correlation id stamped on every log line of the run.
    """
    trigger: str = "cron"
    run_id: str = field(default_factory=lambda: f"run_{uuid4().hex[:16]}")
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None
    status: RunStatus = RunStatus.RUNNING
    pages: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    admins_notified: int = 0
    failures: list[RunFailure] = field(default_factory=list)
    expired: list[Reservation] = field(default_factory=list)
    reconcile_failures: list[str] = field(default_factory=list)
    notification_failures: list[str] = field(default_factory=list)
    error: Optional[str] = None

    def record_failure(self, reservation: Reservation, error: str) -> None:
        self.failed += 1
        self.failures.append(RunFailure(reservation.id, reservation.reference, error))

    def record_success(self, reservation: Reservation) -> None:
        self.succeeded += 1
        self.expired.append(reservation)

    def duration_ms(self) -> int:
        end = self.finished_at or _utcnow()
        return int((end - self.started_at).total_seconds() * 1000)

    def finish(self, status: Optional[RunStatus] = None) -> None:
        self.finished_at = _utcnow()
        if status is not None:
            self.status = status
        elif self.failed:
            self.status = RunStatus.COMPLETED_WITH_FAILURES
        else:
            self.status = RunStatus.COMPLETED

    def to_report(self) -> dict[str, Any]:
        """Structured process-level report."""
        report: dict[str, Any] = {
            "job_id": self.run_id,
            "trigger": self.trigger,
            "status": str(self.status),
            "started_at": self.started_at.isoformat(),
            "duration_ms": self.duration_ms(),
            "batches": self.pages,
            "total_processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "admins_notified": self.admins_notified,
            "failed_bookings": [f.to_dict() for f in self.failures],
        }
        if self.reconcile_failures:
            report["reconcile_failures"] = list(self.reconcile_failures)
        if self.notification_failures:
            report["notification_failures"] = list(self.notification_failures)
        if self.error:
            report["error"] = self.error
        return report
