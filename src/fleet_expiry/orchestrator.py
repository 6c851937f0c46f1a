"""
Expiration run orchestration.

One run walks the expirable set page by page::

    IDLE -> FETCHING -> PROCESSING_PAGE -> (FETCHING | FINALIZING) -> IDLE

Each reservation in a page goes through expire -> reconcile -> notify on its
own task. A page is finished before the next one is fetched. Only a failed
page fetch ends a run early. Per-reservation failures are collected into the
run report.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum
from typing import Callable, Optional, Sequence

from .expirer import ExpireResult, ExpireStatus, ReservationExpirer
from .finder import ExpirationFinder
from .lease import MemoryRunLease, RunLease
from .logging import LogContext, get_logger
from .models import ProcessRun, Reservation, RunStatus
from .notifier import ExpirationNotifier
from .reconciler import AvailabilityReconciler, ReconcileResult, ReconcileStatus

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunState(StrEnum):
    IDLE = "idle"
    FETCHING = "fetching"
    PROCESSING_PAGE = "processing_page"
    FINALIZING = "finalizing"


@dataclass
class ReservationOutcome:
    """What happened to one reservation of a page."""
    reservation: Reservation
    expire: Optional[ExpireResult] = None
    reconcile: Optional[ReconcileResult] = None
    notified: bool = False
    error: Optional[str] = None

    @property
    def expired(self) -> bool:
        return self.expire is not None and self.expire.expired

    @property
    def skipped(self) -> bool:
        return self.expire is not None and self.expire.status == ExpireStatus.SKIPPED

    @property
    def failed(self) -> bool:
        return not self.expired and not self.skipped

    @property
    def failure_reason(self) -> str:
        if self.error:
            return self.error
        if self.expire is not None and self.expire.error:
            return self.expire.error
        return "Failed after max retries"


class ExpirationOrchestrator:
    """Drives one expiration run from the first page fetch to the final report."""

    def __init__(
        self,
        finder: ExpirationFinder,
        expirer: ReservationExpirer,
        reconciler: AvailabilityReconciler,
        notifier: ExpirationNotifier,
        lease: Optional[RunLease] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._finder = finder
        self._expirer = expirer
        self._reconciler = reconciler
        self._notifier = notifier
        self._lease = lease or MemoryRunLease()
        self._clock = clock or _utcnow
        self._state = RunState.IDLE

    @property
    def state(self) -> RunState:
        return self._state

    async def run(self, trigger: str = "cron") -> ProcessRun:
        """
        Execute one expiration run.

        Raises:
            RunInProgressError: another run holds the lease
            ExpirationFetchError: a page could not be fetched
        """
        run = ProcessRun(trigger=trigger)
        with LogContext(job_id=run.run_id):
            async with self._lease.hold(run.run_id):
                try:
                    return await self._execute(run)
                finally:
                    self._state = RunState.IDLE

    async def _execute(self, run: ProcessRun) -> ProcessRun:
        now = self._clock()
        logger.info(
            "Starting booking expiration process",
            trigger=run.trigger,
            now=now.isoformat(),
            batch_size=self._finder.page_size,
        )

        offset = 0
        try:
            while True:
                self._state = RunState.FETCHING
                page = await self._finder.fetch_page(now, offset)

                if not page:
                    if run.pages == 0:
                        run.finish(RunStatus.NOTHING_TO_DO)
                        logger.info("No bookings to expire", duration_ms=run.duration_ms())
                        return run
                    break

                self._state = RunState.PROCESSING_PAGE
                run.pages += 1
                logger.info(
                    "Processing batch of bookings",
                    batch_number=run.pages,
                    batch_size=len(page),
                    offset=offset,
                )
                outcomes = await asyncio.gather(*(self._process(r) for r in page))
                still_eligible = self._tally(run, outcomes)

                if self._finder.is_exhausted(page):
                    break
                # Expired and skipped rows have left the result set
                offset += still_eligible
        except Exception as e:
            run.error = str(e)
            run.finish(RunStatus.ABORTED)
            logger.error(
                "Booking expiration process failed",
                exc_info=True,
                error=str(e),
                duration_ms=run.duration_ms(),
                succeeded=run.succeeded,
                failed=run.failed,
            )
            await self._send_admin_digest(run)
            raise

        self._state = RunState.FINALIZING
        await self._send_admin_digest(run)
        run.finish()

        report = run.to_report()
        logger.info(
            "Booking expiration process completed",
            total_processed=report["total_processed"],
            succeeded=report["succeeded"],
            failed=report["failed"],
            skipped=report["skipped"],
            batches=report["batches"],
            duration_ms=report["duration_ms"],
            admins_notified=report["admins_notified"],
        )
        if run.failures:
            logger.error(
                "Some bookings failed to expire",
                failed_count=run.failed,
                failed_bookings=report["failed_bookings"],
            )
        return run

    async def _process(self, reservation: Reservation) -> ReservationOutcome:
        outcome = ReservationOutcome(reservation)
        try:
            outcome.expire = await self._expirer.expire(reservation)
        except Exception as e:
            logger.exception(
                "Unexpected error expiring booking",
                reservation_id=reservation.id,
                reference=reservation.reference,
            )
            outcome.error = str(e) or type(e).__name__
            return outcome

        if not outcome.expired:
            return outcome

        expired = outcome.expire.reservation
        # The expiration is committed; what follows cannot fail the reservation
        try:
            outcome.reconcile = await self._reconciler.reconcile(expired)
        except Exception:
            logger.exception(
                "Unexpected error reconciling car availability",
                reservation_id=reservation.id,
                vehicle_id=reservation.vehicle_id,
            )
        try:
            outcome.notified = await self._notifier.notify_customer(expired)
        except Exception:
            logger.exception(
                "Unexpected error notifying customer",
                reservation_id=reservation.id,
            )
        return outcome

    def _tally(self, run: ProcessRun, outcomes: Sequence[ReservationOutcome]) -> int:
        """Fold a page's outcomes into the run. Returns rows still eligible."""
        still_eligible = 0
        for outcome in outcomes:
            run.processed += 1
            if outcome.expired:
                run.record_success(outcome.expire.reservation)
                if outcome.reconcile is None or outcome.reconcile.status == ReconcileStatus.FAILED:
                    run.reconcile_failures.append(outcome.reservation.id)
                if not outcome.notified:
                    run.notification_failures.append(outcome.reservation.id)
            elif outcome.skipped:
                run.skipped += 1
            else:
                run.record_failure(outcome.reservation, outcome.failure_reason)
                still_eligible += 1
        return still_eligible

    async def _send_admin_digest(self, run: ProcessRun) -> None:
        if not run.expired:
            return
        try:
            run.admins_notified = await self._notifier.notify_admins(run.expired)
        except Exception:
            logger.exception("Failed to send admin notifications for expired bookings")
