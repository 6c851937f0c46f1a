"""PostgreSQL-backed stores over the booking service's schema.

Tables read and written: ``bookings``, ``cars``, ``notifications``, ``users``.
The scheduler only updates ``bookings.status`` and ``cars.status`` and inserts
notifications; every other column is owned by other flows.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional, Sequence

import asyncpg

from ..constants import (
    ACTIVE_CLAIM_STATUSES,
    EXPIRABLE_STATUSES,
    ReservationStatus,
    UserRole,
)
from ..exceptions import StoreError
from ..logging import get_logger
from ..models import Notification, Reservation, User, Vehicle
from .base import NotificationStore, ReservationStore, UserDirectory, VehicleStore

logger = get_logger(__name__)

_DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

_RESERVATION_COLUMNS = """
    b.id::text AS id,
    b.booking_reference,
    b.customer_id::text AS customer_id,
    b.car_id::text AS car_id,
    b.start_date,
    b.end_date,
    b.status::text AS status,
    b.expires_at,
    b.created_by::text AS created_by,
    c.status::text AS car_status,
    c.manufacturer,
    c.model,
    c.license_plate
"""


class PostgresDatabase:
    """Lazily created asyncpg pool shared by all stores."""

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 5) -> None:
        if dsn.startswith("postgres://"):
            dsn = dsn.replace("postgres://", "postgresql://", 1)
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self._dsn, min_size=self._min_size, max_size=self._max_size
            )
            logger.info("PostgreSQL pool created", min_size=self._min_size, max_size=self._max_size)
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


def _aware(value: datetime) -> datetime:
    # Columns are "timestamp without time zone" holding UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_to_reservation(row: Any) -> Reservation:
    vehicle = None
    if row["car_status"] is not None:
        vehicle = Vehicle(
            id=row["car_id"],
            status=row["car_status"],
            manufacturer=row["manufacturer"] or "",
            model=row["model"] or "",
            license_plate=row["license_plate"],
        )
    return Reservation(
        id=row["id"],
        reference=row["booking_reference"],
        customer_id=row["customer_id"],
        vehicle_id=row["car_id"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        hold_deadline=_aware(row["expires_at"]),
        created_by=row["created_by"],
        status=ReservationStatus(row["status"]),
        vehicle=vehicle,
    )


class PostgresReservationStore(ReservationStore):
    def __init__(self, db: PostgresDatabase) -> None:
        self._db = db

    async def list_expirable(
        self,
        now: datetime,
        offset: int,
        limit: int,
    ) -> list[Reservation]:
        pool = await self._db.pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {_RESERVATION_COLUMNS}
                    FROM bookings b
                    LEFT JOIN cars c ON c.id = b.car_id
                    WHERE b.status::text = ANY($1::text[])
                      AND b.expires_at < ($2::timestamptz AT TIME ZONE 'UTC')
                    ORDER BY b.expires_at ASC, b.id ASC
                    OFFSET $3 LIMIT $4
                    """,
                    [str(s) for s in EXPIRABLE_STATUSES],
                    now,
                    offset,
                    limit,
                )
        except _DB_ERRORS as e:
            raise StoreError(f"Failed to list expirable bookings: {e}", operation="list_expirable") from e
        return [_row_to_reservation(row) for row in rows]

    async def get(self, reservation_id: str) -> Optional[Reservation]:
        pool = await self._db.pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {_RESERVATION_COLUMNS}
                    FROM bookings b
                    LEFT JOIN cars c ON c.id = b.car_id
                    WHERE b.id = $1::uuid
                    """,
                    reservation_id,
                )
        except _DB_ERRORS as e:
            raise StoreError(f"Failed to load booking: {e}", operation="get_reservation") from e
        return _row_to_reservation(row) if row else None

    async def save(self, reservation: Reservation) -> None:
        pool = await self._db.pool()
        try:
            async with pool.acquire() as conn:
                result = await conn.execute(
                    """
                    UPDATE bookings SET status = $2, updated_at = NOW()
                    WHERE id = $1::uuid
                    """,
                    reservation.id,
                    str(reservation.status),
                )
        except _DB_ERRORS as e:
            raise StoreError(f"Failed to save booking: {e}", operation="save_reservation") from e
        if result.split()[-1] == "0":
            raise StoreError(f"Booking {reservation.id} not found", operation="save_reservation")

    async def count_active_for_vehicle(
        self,
        vehicle_id: str,
        exclude_reservation_id: str,
    ) -> int:
        pool = await self._db.pool()
        try:
            async with pool.acquire() as conn:
                count = await conn.fetchval(
                    """
                    SELECT COUNT(*) FROM bookings
                    WHERE car_id = $1::uuid
                      AND status::text = ANY($2::text[])
                      AND id <> $3::uuid
                    """,
                    vehicle_id,
                    [str(s) for s in ACTIVE_CLAIM_STATUSES],
                    exclude_reservation_id,
                )
        except _DB_ERRORS as e:
            raise StoreError(f"Failed to count active bookings: {e}", operation="count_active") from e
        return int(count or 0)


class PostgresVehicleStore(VehicleStore):
    def __init__(self, db: PostgresDatabase) -> None:
        self._db = db

    async def get(self, vehicle_id: str) -> Optional[Vehicle]:
        pool = await self._db.pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT id::text AS id, status::text AS status,
                           manufacturer, model, license_plate
                    FROM cars WHERE id = $1::uuid
                    """,
                    vehicle_id,
                )
        except _DB_ERRORS as e:
            raise StoreError(f"Failed to load car: {e}", operation="get_vehicle") from e
        if not row:
            return None
        return Vehicle(
            id=row["id"],
            status=row["status"],
            manufacturer=row["manufacturer"] or "",
            model=row["model"] or "",
            license_plate=row["license_plate"],
        )

    async def save(self, vehicle: Vehicle) -> None:
        pool = await self._db.pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(
                    "UPDATE cars SET status = $2, updated_at = NOW() WHERE id = $1::uuid",
                    vehicle.id,
                    str(vehicle.status),
                )
        except _DB_ERRORS as e:
            raise StoreError(f"Failed to save car: {e}", operation="save_vehicle") from e


class PostgresNotificationStore(NotificationStore):
    # Ids are generated client-side, so a retried insert of a row that already
    # committed is a no-op
    _INSERT = """
        INSERT INTO notifications (id, recipient_id, type, message, status, created_at)
        VALUES ($1::uuid, $2::uuid, $3, $4, $5, $6::timestamptz AT TIME ZONE 'UTC')
        ON CONFLICT (id) DO NOTHING
    """

    def __init__(self, db: PostgresDatabase) -> None:
        self._db = db

    @staticmethod
    def _params(n: Notification) -> tuple:
        return (n.id, n.recipient_id, str(n.type), n.message, str(n.status), n.created_at)

    async def create(self, notification: Notification) -> Notification:
        pool = await self._db.pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(self._INSERT, *self._params(notification))
        except _DB_ERRORS as e:
            raise StoreError(f"Failed to create notification: {e}", operation="create_notification") from e
        return notification

    async def create_many(self, notifications: Sequence[Notification]) -> list[Notification]:
        batch = list(notifications)
        if not batch:
            return []
        pool = await self._db.pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.executemany(self._INSERT, [self._params(n) for n in batch])
        except _DB_ERRORS as e:
            raise StoreError(f"Failed to create notifications: {e}", operation="create_notifications") from e
        return batch


class PostgresUserDirectory(UserDirectory):
    def __init__(self, db: PostgresDatabase) -> None:
        self._db = db

    async def find_by_role(self, role: UserRole) -> list[User]:
        pool = await self._db.pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT id::text AS id, role::text AS role, name
                    FROM users WHERE role::text = $1
                    ORDER BY created_at DESC
                    """,
                    str(role),
                )
        except _DB_ERRORS as e:
            raise StoreError(f"Failed to look up users: {e}", operation="find_by_role") from e
        return [User(id=row["id"], role=UserRole(row["role"]), name=row["name"]) for row in rows]
