"""End-to-end tests for ExpirationOrchestrator over the in-memory stores."""
from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

import pytest
from unittest.mock import AsyncMock

from fleet_expiry.constants import NotificationType, ReservationStatus, VehicleStatus
from fleet_expiry.exceptions import ExpirationFetchError, RunInProgressError, StoreError
from fleet_expiry.lease import MemoryRunLease
from fleet_expiry.models import RunStatus
from fleet_expiry.orchestrator import RunState

from conftest import make_reservation, make_vehicle


def _messages(caplog) -> list[str]:
    return [r.getMessage() for r in caplog.records]


class TestScenarios:
    """The canonical expiration scenarios."""

    @pytest.mark.asyncio
    async def test_single_reservation(
        self, orchestrator, reservation_store, vehicle_store, notification_store, push_channel
    ):
        vehicle_store.add(make_vehicle("car-1", status=VehicleStatus.RESERVED))
        reservation_store.add(make_reservation("bk-1", vehicle_id="car-1"))

        run = await orchestrator.run()

        assert run.status == RunStatus.COMPLETED
        assert (run.processed, run.succeeded, run.failed) == (1, 1, 0)
        assert (await reservation_store.get("bk-1")).status == ReservationStatus.EXPIRED
        assert (await vehicle_store.get("car-1")).status == VehicleStatus.AVAILABLE

        customer = notification_store.for_recipient("user-1")
        assert [n.type for n in customer] == [NotificationType.BOOKING_EXPIRED]
        assert "Toyota Corolla" in customer[0].message
        assert run.admins_notified == 2
        assert len(push_channel.sent) == 3

    @pytest.mark.asyncio
    async def test_shared_vehicle_with_remaining_claim(
        self, orchestrator, reservation_store, vehicle_store, now
    ):
        vehicle_store.add(make_vehicle("car-1", status=VehicleStatus.RESERVED))
        reservation_store.add(make_reservation("bk-1", vehicle_id="car-1"))
        reservation_store.add(make_reservation(
            "bk-2", vehicle_id="car-1", hold_deadline=now + timedelta(hours=2)
        ))

        run = await orchestrator.run()

        assert run.succeeded == 1
        assert (await reservation_store.get("bk-2")).status == ReservationStatus.PENDING
        assert (await vehicle_store.get("car-1")).status == VehicleStatus.RESERVED

    @pytest.mark.asyncio
    async def test_two_expiring_reservations_share_one_vehicle(
        self, orchestrator, reservation_store, vehicle_store
    ):
        vehicle_store.add(make_vehicle("car-1", status=VehicleStatus.RESERVED))
        reservation_store.add(make_reservation("bk-1", vehicle_id="car-1"))
        reservation_store.add(make_reservation("bk-2", vehicle_id="car-1"))

        run = await orchestrator.run()

        assert run.succeeded == 2
        assert (await vehicle_store.get("car-1")).status == VehicleStatus.AVAILABLE
        assert vehicle_store.writes == 1

    @pytest.mark.asyncio
    async def test_fail_twice_then_succeed(
        self, orchestrator, reservation_store, vehicle_store, sleeper
    ):
        vehicle_store.add(make_vehicle("car-1"))
        reservation_store.add(make_reservation("bk-1"))
        original_save = reservation_store.save
        failures = {"left": 2}

        async def flaky_save(reservation):
            if failures["left"]:
                failures["left"] -= 1
                raise StoreError("serialization failure")
            await original_save(reservation)

        reservation_store.save = flaky_save

        run = await orchestrator.run()

        assert run.status == RunStatus.COMPLETED
        assert run.succeeded == 1
        assert sleeper.delays[:2] == [1.0, 2.0]
        assert (await reservation_store.get("bk-1")).status == ReservationStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_empty_set(self, orchestrator, reservation_store, vehicle_store, notification_store, caplog):
        with caplog.at_level(logging.INFO, logger="fleet_expiry"):
            run = await orchestrator.run()

        assert run.status == RunStatus.NOTHING_TO_DO
        assert run.processed == 0
        assert reservation_store.writes == 0
        assert vehicle_store.writes == 0
        assert notification_store.notifications == []
        assert _messages(caplog).count("No bookings to expire") == 1
        assert "Booking expiration process completed" not in _messages(caplog)


class TestIsolation:
    """One reservation's failure never affects its siblings."""

    @pytest.mark.asyncio
    async def test_failing_reservation_does_not_block_siblings(
        self, orchestrator, reservation_store, vehicle_store, caplog
    ):
        for i in range(1, 4):
            vehicle_store.add(make_vehicle(f"car-{i}"))
            reservation_store.add(make_reservation(f"bk-{i}", vehicle_id=f"car-{i}"))
        original_save = reservation_store.save

        async def save(reservation):
            if reservation.id == "bk-2":
                raise StoreError("row locked")
            await original_save(reservation)

        reservation_store.save = save

        with caplog.at_level(logging.INFO, logger="fleet_expiry"):
            run = await orchestrator.run()

        assert run.status == RunStatus.COMPLETED_WITH_FAILURES
        assert (run.succeeded, run.failed) == (2, 1)
        assert [f.reservation_id for f in run.failures] == ["bk-2"]
        assert (await reservation_store.get("bk-2")).status == ReservationStatus.PENDING
        assert (await vehicle_store.get("car-2")).status == VehicleStatus.RESERVED
        assert (await vehicle_store.get("car-1")).status == VehicleStatus.AVAILABLE
        assert "Some bookings failed to expire" in _messages(caplog)

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(
        self, orchestrator, expirer, reservation_store, vehicle_store
    ):
        vehicle_store.add(make_vehicle("car-1"))
        reservation_store.add(make_reservation("bk-1"))
        reservation_store.add(make_reservation("bk-2"))
        original_expire = expirer.expire

        async def expire(reservation):
            if reservation.id == "bk-1":
                raise RuntimeError("bug")
            return await original_expire(reservation)

        expirer.expire = expire

        run = await orchestrator.run()

        assert run.succeeded == 1
        assert run.failures[0].reservation_id == "bk-1"
        assert run.failures[0].error == "bug"

    @pytest.mark.asyncio
    async def test_notification_failure_keeps_expiration(
        self, orchestrator, reservation_store, vehicle_store, notification_store
    ):
        vehicle_store.add(make_vehicle("car-1"))
        reservation_store.add(make_reservation("bk-1"))
        notification_store.create = AsyncMock(side_effect=StoreError("insert failed"))

        run = await orchestrator.run()

        assert run.status == RunStatus.COMPLETED
        assert run.succeeded == 1
        assert run.notification_failures == ["bk-1"]
        assert (await reservation_store.get("bk-1")).status == ReservationStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_reconcile_failure_keeps_expiration(
        self, orchestrator, reservation_store, vehicle_store
    ):
        vehicle_store.add(make_vehicle("car-1"))
        reservation_store.add(make_reservation("bk-1"))
        vehicle_store.save = AsyncMock(side_effect=StoreError("read only"))

        run = await orchestrator.run()

        assert run.succeeded == 1
        assert run.reconcile_failures == ["bk-1"]
        assert run.to_report()["reconcile_failures"] == ["bk-1"]


class TestInvariants:
    """Idempotence and terminal states."""

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(
        self, orchestrator, reservation_store, vehicle_store, notification_store
    ):
        vehicle_store.add(make_vehicle("car-1"))
        reservation_store.add(make_reservation("bk-1"))

        await orchestrator.run()
        writes = (reservation_store.writes, vehicle_store.writes, len(notification_store.notifications))
        second = await orchestrator.run()

        assert second.status == RunStatus.NOTHING_TO_DO
        assert (
            reservation_store.writes,
            vehicle_store.writes,
            len(notification_store.notifications),
        ) == writes

    @pytest.mark.asyncio
    async def test_terminal_reservations_never_change(
        self, orchestrator, reservation_store, vehicle_store
    ):
        vehicle_store.add(make_vehicle("car-1"))
        terminal = {
            "bk-1": ReservationStatus.CANCELLED,
            "bk-2": ReservationStatus.CONVERTED,
            "bk-3": ReservationStatus.EXPIRED,
        }
        for reservation_id, status in terminal.items():
            reservation_store.add(make_reservation(reservation_id, status=status))
        reservation_store.add(make_reservation("bk-4"))

        await orchestrator.run()

        for reservation_id, status in terminal.items():
            assert (await reservation_store.get(reservation_id)).status == status

    @pytest.mark.asyncio
    async def test_cancelled_between_fetch_and_write_is_skipped(
        self, orchestrator, reservation_store, vehicle_store, notification_store
    ):
        vehicle_store.add(make_vehicle("car-1", status=VehicleStatus.RESERVED))
        reservation_store.add(make_reservation("bk-1"))
        original_list = reservation_store.list_expirable

        async def list_then_cancel(now, offset, limit):
            page = await original_list(now, offset, limit)
            for reservation in page:
                cancelled = await reservation_store.get(reservation.id)
                cancelled.status = ReservationStatus.CANCELLED
                reservation_store.add(cancelled)
            return page

        reservation_store.list_expirable = list_then_cancel

        run = await orchestrator.run()

        assert run.skipped == 1
        assert run.succeeded == 0
        assert (await reservation_store.get("bk-1")).status == ReservationStatus.CANCELLED
        assert (await vehicle_store.get("car-1")).status == VehicleStatus.RESERVED
        assert notification_store.notifications == []


class TestPaging:
    """Multi-page runs."""

    @pytest.mark.asyncio
    async def test_processes_every_page(self, make_orchestrator, reservation_store, vehicle_store, now):
        vehicle_store.add(make_vehicle("car-1"))
        for i in range(7):
            reservation_store.add(make_reservation(
                f"bk-{i}", hold_deadline=now - timedelta(minutes=30 - i)
            ))

        run = await make_orchestrator(page_size=3).run()

        assert run.succeeded == 7
        assert run.pages == 3
        assert all(r.status == ReservationStatus.EXPIRED for r in reservation_store.all())

    @pytest.mark.asyncio
    async def test_failed_rows_do_not_hide_later_rows(
        self, make_orchestrator, reservation_store, vehicle_store, now
    ):
        vehicle_store.add(make_vehicle("car-1"))
        for i in range(5):
            reservation_store.add(make_reservation(
                f"bk-{i}", hold_deadline=now - timedelta(minutes=30 - i)
            ))
        original_save = reservation_store.save

        async def save(reservation):
            if reservation.id == "bk-0":
                raise StoreError("row locked")
            await original_save(reservation)

        reservation_store.save = save

        run = await make_orchestrator(page_size=2).run()

        assert run.succeeded == 4
        assert run.failed == 1
        statuses = {r.id: r.status for r in reservation_store.all()}
        assert statuses["bk-0"] == ReservationStatus.PENDING
        assert all(statuses[f"bk-{i}"] == ReservationStatus.EXPIRED for i in range(1, 5))

    @pytest.mark.asyncio
    async def test_admin_digest_once_per_run(
        self, make_orchestrator, reservation_store, vehicle_store, notification_store, now
    ):
        vehicle_store.add(make_vehicle("car-1"))
        for i in range(4):
            reservation_store.add(make_reservation(f"bk-{i}", hold_deadline=now - timedelta(minutes=10 - i)))

        await make_orchestrator(page_size=2).run()

        digests = notification_store.for_recipient("admin-1")
        assert len(digests) == 1
        assert digests[0].message.startswith("4 bookings have expired.")


class TestFatalAndOverlap:
    """Run-level failures."""

    @pytest.mark.asyncio
    async def test_fetch_error_aborts_and_keeps_committed(
        self, make_orchestrator, reservation_store, vehicle_store, notification_store, now, caplog
    ):
        vehicle_store.add(make_vehicle("car-1"))
        for i in range(4):
            reservation_store.add(make_reservation(f"bk-{i}", hold_deadline=now - timedelta(minutes=10 - i)))
        original_list = reservation_store.list_expirable
        calls = {"n": 0}

        async def list_expirable(now, offset, limit):
            calls["n"] += 1
            if calls["n"] == 2:
                raise ConnectionError("db went away")
            return await original_list(now, offset, limit)

        reservation_store.list_expirable = list_expirable
        orchestrator = make_orchestrator(page_size=2)

        with caplog.at_level(logging.INFO, logger="fleet_expiry"):
            with pytest.raises(ExpirationFetchError):
                await orchestrator.run()

        expired = [r for r in reservation_store.all() if r.status == ReservationStatus.EXPIRED]
        assert len(expired) == 2
        assert "Booking expiration process failed" in _messages(caplog)
        # Admins still hear about the committed expirations
        assert len(notification_store.for_recipient("admin-1")) == 1
        assert orchestrator.state == RunState.IDLE

    @pytest.mark.asyncio
    async def test_overlapping_run_is_rejected(self, make_orchestrator, reservation_store, vehicle_store):
        vehicle_store.add(make_vehicle("car-1"))
        reservation_store.add(make_reservation("bk-1"))
        lease = MemoryRunLease()
        orchestrator = make_orchestrator(lease=lease)
        assert await lease.acquire("someone-else")

        with pytest.raises(RunInProgressError):
            await orchestrator.run()

        assert reservation_store.writes == 0
        await lease.release("someone-else")
        assert (await orchestrator.run()).succeeded == 1

    @pytest.mark.asyncio
    async def test_concurrent_runs_expire_once(
        self, make_orchestrator, reservation_store, vehicle_store, notification_store
    ):
        vehicle_store.add(make_vehicle("car-1"))
        reservation_store.add(make_reservation("bk-1"))
        orchestrator = make_orchestrator()

        results = await asyncio.gather(
            orchestrator.run(), orchestrator.run(), return_exceptions=True
        )

        assert sum(1 for r in results if isinstance(r, RunInProgressError)) == 1
        assert reservation_store.writes == 1
        assert len(notification_store.for_recipient("user-1")) == 1

    @pytest.mark.asyncio
    async def test_log_lines_carry_run_id(self, orchestrator, reservation_store, vehicle_store, caplog):
        vehicle_store.add(make_vehicle("car-1"))
        reservation_store.add(make_reservation("bk-1"))

        with caplog.at_level(logging.INFO, logger="fleet_expiry"):
            run = await orchestrator.run()

        job_ids = {r.data.get("job_id") for r in caplog.records if hasattr(r, "data")}
        assert job_ids == {run.run_id}
