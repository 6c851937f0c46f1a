"""Releases a vehicle once its last active claim has expired."""
from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Optional

from .constants import VehicleStatus
from .logging import get_logger
from .models import Reservation, Vehicle
from .retry import RetryPolicy, SleepFunc, retry_call
from .stores.base import ReservationStore, VehicleStore

logger = get_logger(__name__)


class ReconcileStatus(StrEnum):
    RELEASED = "released"
    ALREADY_AVAILABLE = "already_available"
    RETAINED = "retained"
    VEHICLE_MISSING = "vehicle_missing"
    FAILED = "failed"


@dataclass
class ReconcileResult:
    status: ReconcileStatus
    vehicle_id: str
    active_count: int = 0
    vehicle: Optional[Vehicle] = None
    error: Optional[str] = None


class AvailabilityReconciler:
    """
    Re-derives a vehicle's availability after one of its reservations expired.

    The active-claim count and the vehicle row are read fresh on every call.
    Two reservations for the same vehicle expiring in the same page therefore
    converge on one release: the second call sees the vehicle already
    available and writes nothing.
    """

    def __init__(
        self,
        reservation_store: ReservationStore,
        vehicle_store: VehicleStore,
        policy: Optional[RetryPolicy] = None,
        sleep: Optional[SleepFunc] = None,
    ) -> None:
        self._reservations = reservation_store
        self._vehicles = vehicle_store
        self._policy = policy or RetryPolicy()
        self._sleep = sleep

    async def _reconcile_once(self, reservation: Reservation) -> ReconcileResult:
        active_count = await self._reservations.count_active_for_vehicle(
            reservation.vehicle_id,
            exclude_reservation_id=reservation.id,
        )

        if active_count > 0:
            return ReconcileResult(
                ReconcileStatus.RETAINED,
                reservation.vehicle_id,
                active_count=active_count,
            )

        vehicle = await self._vehicles.get(reservation.vehicle_id)
        if vehicle is None:
            return ReconcileResult(ReconcileStatus.VEHICLE_MISSING, reservation.vehicle_id)

        if vehicle.is_available():
            return ReconcileResult(
                ReconcileStatus.ALREADY_AVAILABLE, vehicle.id, vehicle=vehicle
            )

        vehicle.status = VehicleStatus.AVAILABLE
        await self._vehicles.save(vehicle)
        return ReconcileResult(ReconcileStatus.RELEASED, vehicle.id, vehicle=vehicle)

    async def reconcile(self, reservation: Reservation) -> ReconcileResult:
        outcome = await retry_call(
            self._reconcile_once,
            reservation,
            policy=self._policy,
            retry_message="Failed to reconcile car availability, retrying",
            log_fields={"reservation_id": reservation.id, "vehicle_id": reservation.vehicle_id},
            sleep=self._sleep,
            log=logger,
        )

        if not outcome.success or outcome.value is None:
            logger.error(
                "Failed to reconcile car availability after max retries",
                reservation_id=reservation.id,
                vehicle_id=reservation.vehicle_id,
                attempts=outcome.attempts,
                error=outcome.error,
            )
            return ReconcileResult(
                ReconcileStatus.FAILED, reservation.vehicle_id, error=outcome.error
            )

        result = outcome.value
        if result.status == ReconcileStatus.RELEASED and result.vehicle is not None:
            logger.info(
                "Car availability restored",
                vehicle_id=result.vehicle_id,
                license_plate=result.vehicle.license_plate,
                manufacturer=result.vehicle.manufacturer,
                model=result.vehicle.model,
                expired_reservation_id=reservation.id,
            )
        elif result.status == ReconcileStatus.RETAINED:
            logger.info(
                "Car remains unavailable - other active bookings exist",
                vehicle_id=result.vehicle_id,
                active_bookings_count=result.active_count,
                expired_reservation_id=reservation.id,
            )
        elif result.status == ReconcileStatus.VEHICLE_MISSING:
            logger.warning(
                "Car for expired booking not found",
                vehicle_id=result.vehicle_id,
                expired_reservation_id=reservation.id,
            )
        else:
            logger.debug(
                "Car already available",
                vehicle_id=result.vehicle_id,
                expired_reservation_id=reservation.id,
            )
        return result
