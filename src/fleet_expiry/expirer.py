"""Moves a single reservation to EXPIRED with bounded retry."""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import StrEnum
from typing import Optional

from .constants import ReservationStatus
from .exceptions import InvalidTransitionError
from .logging import get_logger
from .models import Reservation
from .retry import RetryPolicy, SleepFunc, retry_call
from .stores.base import ReservationStore

logger = get_logger(__name__)


class ExpireStatus(StrEnum):
    EXPIRED = "expired"
    # Left the expirable set before we wrote (cancelled, converted, expired)
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ExpireResult:
    status: ExpireStatus
    reservation: Reservation
    attempts: int = 0
    error: Optional[str] = None

    @property
    def expired(self) -> bool:
        return self.status == ExpireStatus.EXPIRED


class _NoLongerExpirable(Exception):
    def __init__(self, current: Optional[Reservation]) -> None:
        super().__init__("reservation is no longer expirable")
        self.current = current


class ReservationExpirer:
    """Expires reservations one at a time.

    Every attempt re-reads the reservation and checks that it is still in a
    transitionable state before writing. A reservation cancelled or converted
    by the booking flow between the page fetch and the write is left alone,
    and so is one an earlier attempt already expired. Calling ``expire``
    twice for the same reservation therefore writes at most once.
    """

    def __init__(
        self,
        reservation_store: ReservationStore,
        policy: Optional[RetryPolicy] = None,
        sleep: Optional[SleepFunc] = None,
    ) -> None:
        self._store = reservation_store
        policy = policy or RetryPolicy()
        self._policy = replace(
            policy,
            non_retryable_exceptions=policy.non_retryable_exceptions
            + (_NoLongerExpirable, InvalidTransitionError),
        )
        self._sleep = sleep

    async def _attempt(self, reservation_id: str, state: dict) -> Reservation:
        current = await self._store.get(reservation_id)
        if (
            current is not None
            and current.status == ReservationStatus.EXPIRED
            and state["write_attempted"]
        ):
            # An earlier attempt's write landed even though it reported an error
            return current
        if current is None or not current.is_transitionable():
            raise _NoLongerExpirable(current)
        current.mark_expired(datetime.now(timezone.utc))
        state["write_attempted"] = True
        await self._store.save(current)
        return current

    async def expire(self, reservation: Reservation) -> ExpireResult:
        outcome = await retry_call(
            self._attempt,
            reservation.id,
            {"write_attempted": False},
            policy=self._policy,
            retry_message="Failed to expire booking, retrying",
            log_fields={"reservation_id": reservation.id},
            sleep=self._sleep,
            log=logger,
        )

        if outcome.success and outcome.value is not None:
            expired = outcome.value
            # Keep the vehicle snapshot from the page for message text
            if expired.vehicle is None:
                expired.vehicle = reservation.vehicle
            logger.info(
                "Booking expired successfully",
                reservation_id=expired.id,
                reference=expired.reference,
                customer_id=expired.customer_id,
                vehicle_id=expired.vehicle_id,
                hold_deadline=expired.hold_deadline.isoformat(),
                attempts=outcome.attempts,
            )
            return ExpireResult(ExpireStatus.EXPIRED, expired, attempts=outcome.attempts)

        if isinstance(outcome.last_exception, (_NoLongerExpirable, InvalidTransitionError)):
            current = getattr(outcome.last_exception, "current", None)
            logger.info(
                "Booking no longer expirable, skipping",
                reservation_id=reservation.id,
                reference=reservation.reference,
                current_status=str(current.status) if current else "missing",
            )
            return ExpireResult(
                ExpireStatus.SKIPPED,
                current or reservation,
                attempts=outcome.attempts,
            )

        logger.error(
            "Failed to expire booking after max retries",
            reservation_id=reservation.id,
            reference=reservation.reference,
            attempts=outcome.attempts,
            error=outcome.error,
        )
        return ExpireResult(
            ExpireStatus.FAILED,
            reservation,
            attempts=outcome.attempts,
            error=outcome.error or "Failed after max retries",
        )

