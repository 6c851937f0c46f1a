"""
Pytest configuration for fleet-expiry tests.
"""
from __future__ import annotations

import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
if str(package_src) not in sys.path:
    sys.path.insert(0, str(package_src))

from fleet_expiry.config import load_settings
from fleet_expiry.constants import ReservationStatus, UserRole, VehicleStatus
from fleet_expiry.expirer import ReservationExpirer
from fleet_expiry.finder import ExpirationFinder
from fleet_expiry.lease import MemoryRunLease
from fleet_expiry.models import Reservation, User, Vehicle
from fleet_expiry.notifier import ExpirationNotifier
from fleet_expiry.orchestrator import ExpirationOrchestrator
from fleet_expiry.push import PushChannel
from fleet_expiry.reconciler import AvailabilityReconciler
from fleet_expiry.retry import RetryPolicy
from fleet_expiry.stores.memory import (
    InMemoryNotificationStore,
    InMemoryReservationStore,
    InMemoryUserDirectory,
    InMemoryVehicleStore,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class RecordingPushChannel(PushChannel):
    """Push channel that remembers every event it was asked to send."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []
        self.fail = fail

    async def send(self, recipient_id: str, event: str, payload: dict[str, Any]) -> bool:
        if self.fail:
            raise ConnectionError("socket server unreachable")
        self.sent.append((recipient_id, event, payload))
        return True

    def for_recipient(self, recipient_id: str) -> list[dict[str, Any]]:
        return [payload for rid, _, payload in self.sent if rid == recipient_id]


class SleepRecorder:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_vehicle(
    vehicle_id: str = "car-1",
    status: str = VehicleStatus.RESERVED,
    manufacturer: str = "Toyota",
    model: str = "Corolla",
    license_plate: Optional[str] = "AB-123-CD",
) -> Vehicle:
    return Vehicle(
        id=vehicle_id,
        status=status,
        manufacturer=manufacturer,
        model=model,
        license_plate=license_plate,
    )


def make_reservation(
    reservation_id: str = "bk-1",
    vehicle_id: str = "car-1",
    status: ReservationStatus = ReservationStatus.PENDING,
    hold_deadline: Optional[datetime] = None,
    reference: Optional[str] = None,
    created_by: str = "user-1",
    customer_id: Optional[str] = "cust-1",
) -> Reservation:
    return Reservation(
        id=reservation_id,
        reference=reference or f"BK-2024-{reservation_id.split('-')[-1].zfill(3)}",
        customer_id=customer_id,
        vehicle_id=vehicle_id,
        start_date=date(2024, 6, 10),
        end_date=date(2024, 6, 12),
        hold_deadline=hold_deadline or NOW - timedelta(hours=1),
        created_by=created_by,
        status=status,
    )


@pytest.fixture(autouse=True)
def clean_settings(monkeypatch):
    """Isolate tests from the developer's environment and the settings cache."""
    import os

    for key in list(os.environ):
        if key.startswith("FLEET_") or key in (
            "BOOKING_EXPIRATION_CRON",
            "BOOKING_BATCH_SIZE",
            "DATABASE_URL",
        ):
            monkeypatch.delenv(key, raising=False)
    load_settings.cache_clear()
    yield
    load_settings.cache_clear()


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def policy() -> RetryPolicy:
    """Production retry shape, paired with the sleep recorder in tests."""
    return RetryPolicy(max_retries=3, base_delay=1.0, max_delay=60.0)


@pytest.fixture
def vehicle_store() -> InMemoryVehicleStore:
    return InMemoryVehicleStore()


@pytest.fixture
def reservation_store(vehicle_store) -> InMemoryReservationStore:
    return InMemoryReservationStore(vehicle_store=vehicle_store)


@pytest.fixture
def notification_store() -> InMemoryNotificationStore:
    return InMemoryNotificationStore()


@pytest.fixture
def admins() -> list[User]:
    return [
        User(id="admin-1", role=UserRole.ADMIN, name="Ada"),
        User(id="admin-2", role=UserRole.ADMIN, name="Grace"),
    ]


@pytest.fixture
def user_directory(admins) -> InMemoryUserDirectory:
    return InMemoryUserDirectory(
        admins + [User(id="user-1", role=UserRole.USER, name="Alan")]
    )


@pytest.fixture
def push_channel() -> RecordingPushChannel:
    return RecordingPushChannel()


@pytest.fixture
def expirer(reservation_store, policy, sleeper) -> ReservationExpirer:
    return ReservationExpirer(reservation_store, policy=policy, sleep=sleeper)


@pytest.fixture
def reconciler(reservation_store, vehicle_store, policy, sleeper) -> AvailabilityReconciler:
    return AvailabilityReconciler(reservation_store, vehicle_store, policy=policy, sleep=sleeper)


@pytest.fixture
def notifier(
    notification_store, user_directory, push_channel, vehicle_store, policy, sleeper
) -> ExpirationNotifier:
    return ExpirationNotifier(
        notification_store,
        user_directory,
        push_channel=push_channel,
        vehicle_store=vehicle_store,
        policy=policy,
        sleep=sleeper,
    )


@pytest.fixture
def make_orchestrator(reservation_store, expirer, reconciler, notifier, now):
    """Factory so tests can pick the page size."""

    def _make(page_size: int = 100, lease=None) -> ExpirationOrchestrator:
        return ExpirationOrchestrator(
            finder=ExpirationFinder(reservation_store, page_size=page_size),
            expirer=expirer,
            reconciler=reconciler,
            notifier=notifier,
            lease=lease or MemoryRunLease(),
            clock=lambda: now,
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator) -> ExpirationOrchestrator:
    return make_orchestrator()
