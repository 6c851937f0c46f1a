"""Store interfaces consumed by the expiration pipeline.

The scheduler never reaches for a global connection. Each component receives
the stores it needs through its constructor, which keeps every store
swappable (PostgreSQL in production, in-memory in tests and development).
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Sequence

from ..constants import UserRole
from ..models import Notification, Reservation, User, Vehicle


class ReservationStore(ABC):
    """Reservation (booking) persistence."""

    @abstractmethod
    async def list_expirable(
        self,
        now: datetime,
        offset: int,
        limit: int,
    ) -> list[Reservation]:
        """
        Reservations in pending/confirmed status with a hold deadline strictly
        before ``now``, oldest deadline first.
        """

    @abstractmethod
    async def get(self, reservation_id: str) -> Optional[Reservation]:
        """Current state of one reservation, or None if it no longer exists."""

    @abstractmethod
    async def save(self, reservation: Reservation) -> None:
        """Persist the reservation's status."""

    @abstractmethod
    async def count_active_for_vehicle(
        self,
        vehicle_id: str,
        exclude_reservation_id: str,
    ) -> int:
        """
        Number of reservations in pending/confirmed/converted status claiming
        the vehicle, excluding ``exclude_reservation_id``.
        """


class VehicleStore(ABC):
    """Vehicle availability persistence."""

    @abstractmethod
    async def get(self, vehicle_id: str) -> Optional[Vehicle]:
        ...

    @abstractmethod
    async def save(self, vehicle: Vehicle) -> None:
        """Persist the vehicle's status."""


class NotificationStore(ABC):
    """Notification persistence.

    Creating a notification whose id is already stored is a no-op, so callers
    may retry an insert whose outcome they never heard back about.
    """

    @abstractmethod
    async def create(self, notification: Notification) -> Notification:
        ...

    async def create_many(self, notifications: Sequence[Notification]) -> list[Notification]:
        """Create several notifications. Stores with a bulk path override this."""
        created = []
        for notification in notifications:
            created.append(await self.create(notification))
        return created


class UserDirectory(ABC):
    """Read-only user lookup."""

    @abstractmethod
    async def find_by_role(self, role: UserRole) -> list[User]:
        ...
