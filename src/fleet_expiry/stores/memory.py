"""In-memory store implementations for tests and local development.

Records are copied on the way in and on the way out, so a caller mutating a
returned object never changes stored state without calling ``save``. This
mirrors a database-backed store and keeps retry behavior honest.
"""
from __future__ import annotations

import copy
from datetime import datetime
from typing import Iterable, Optional, Sequence

from ..constants import ACTIVE_CLAIM_STATUSES, UserRole
from ..exceptions import StoreError
from ..models import Notification, Reservation, User, Vehicle
from .base import NotificationStore, ReservationStore, UserDirectory, VehicleStore


class InMemoryVehicleStore(VehicleStore):
    def __init__(self, vehicles: Iterable[Vehicle] = ()) -> None:
        self._vehicles: dict[str, Vehicle] = {}
        self.writes = 0
        for vehicle in vehicles:
            self.add(vehicle)

    def add(self, vehicle: Vehicle) -> None:
        self._vehicles[vehicle.id] = copy.copy(vehicle)

    async def get(self, vehicle_id: str) -> Optional[Vehicle]:
        vehicle = self._vehicles.get(vehicle_id)
        return copy.copy(vehicle) if vehicle else None

    async def save(self, vehicle: Vehicle) -> None:
        if vehicle.id not in self._vehicles:
            raise StoreError(f"Vehicle {vehicle.id} not found", operation="save_vehicle")
        self._vehicles[vehicle.id] = copy.copy(vehicle)
        self.writes += 1


class InMemoryReservationStore(ReservationStore):
    """Dict-backed reservation store.

    When given a vehicle store, listed reservations carry a snapshot of their
    vehicle, the way the SQL store joins the cars table.
    """

    def __init__(
        self,
        reservations: Iterable[Reservation] = (),
        vehicle_store: Optional[InMemoryVehicleStore] = None,
    ) -> None:
        self._reservations: dict[str, Reservation] = {}
        self._vehicle_store = vehicle_store
        self.writes = 0
        for reservation in reservations:
            self.add(reservation)

    def add(self, reservation: Reservation) -> None:
        self._reservations[reservation.id] = copy.copy(reservation)

    def all(self) -> list[Reservation]:
        return [copy.copy(r) for r in self._reservations.values()]

    async def _with_vehicle(self, reservation: Reservation) -> Reservation:
        result = copy.copy(reservation)
        if self._vehicle_store is not None and result.vehicle is None:
            result.vehicle = await self._vehicle_store.get(result.vehicle_id)
        return result

    async def list_expirable(
        self,
        now: datetime,
        offset: int,
        limit: int,
    ) -> list[Reservation]:
        eligible = sorted(
            (
                r for r in self._reservations.values()
                if r.is_transitionable() and r.is_past_deadline(now)
            ),
            key=lambda r: (r.hold_deadline, r.id),
        )
        return [await self._with_vehicle(r) for r in eligible[offset:offset + limit]]

    async def get(self, reservation_id: str) -> Optional[Reservation]:
        reservation = self._reservations.get(reservation_id)
        if reservation is None:
            return None
        return await self._with_vehicle(reservation)

    async def save(self, reservation: Reservation) -> None:
        if reservation.id not in self._reservations:
            raise StoreError(f"Reservation {reservation.id} not found", operation="save_reservation")
        stored = copy.copy(reservation)
        # The vehicle snapshot is joined on read, never persisted
        stored.vehicle = None
        self._reservations[reservation.id] = stored
        self.writes += 1

    async def count_active_for_vehicle(
        self,
        vehicle_id: str,
        exclude_reservation_id: str,
    ) -> int:
        return sum(
            1 for r in self._reservations.values()
            if r.vehicle_id == vehicle_id
            and r.id != exclude_reservation_id
            and r.status in ACTIVE_CLAIM_STATUSES
        )


class InMemoryNotificationStore(NotificationStore):
    def __init__(self) -> None:
        self.notifications: list[Notification] = []

    def _stored_ids(self) -> set[str]:
        return {n.id for n in self.notifications}

    async def create(self, notification: Notification) -> Notification:
        if notification.id not in self._stored_ids():
            self.notifications.append(notification)
        return notification

    async def create_many(self, notifications: Sequence[Notification]) -> list[Notification]:
        # All or nothing, like a single INSERT transaction
        batch = list(notifications)
        stored = self._stored_ids()
        self.notifications.extend(n for n in batch if n.id not in stored)
        return batch

    def for_recipient(self, recipient_id: str) -> list[Notification]:
        return [n for n in self.notifications if n.recipient_id == recipient_id]


class InMemoryUserDirectory(UserDirectory):
    def __init__(self, users: Iterable[User] = ()) -> None:
        self._users = list(users)

    async def find_by_role(self, role: UserRole) -> list[User]:
        return [u for u in self._users if u.role == role]
