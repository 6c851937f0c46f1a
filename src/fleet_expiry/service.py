"""Wiring: builds the expiration pipeline from settings."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from .config import ExpirySettings
from .expirer import ReservationExpirer
from .finder import ExpirationFinder
from .lease import MemoryRunLease, RedisRunLease, RunLease
from .logging import get_logger
from .notifier import ExpirationNotifier
from .orchestrator import ExpirationOrchestrator
from .push import ConnectionManager, PushChannel, RedisPushChannel
from .reconciler import AvailabilityReconciler
from .retry import SleepFunc
from .scheduler import ExpirationScheduler
from .stores.base import NotificationStore, ReservationStore, UserDirectory, VehicleStore
from .stores.memory import (
    InMemoryNotificationStore,
    InMemoryReservationStore,
    InMemoryUserDirectory,
    InMemoryVehicleStore,
)
from .stores.postgres import (
    PostgresDatabase,
    PostgresNotificationStore,
    PostgresReservationStore,
    PostgresUserDirectory,
    PostgresVehicleStore,
)

logger = get_logger(__name__)


@dataclass
class Stores:
    reservations: ReservationStore
    vehicles: VehicleStore
    notifications: NotificationStore
    users: UserDirectory


@dataclass
class ExpiryService:
    """A wired pipeline plus the connections it owns.

    ``push`` is the channel notifications go out on. Without Redis it is a
    ``ConnectionManager``, and a web tier embedding the service registers its
    websocket sessions there with ``service.push.connect(user_id, socket)``.
    """
    settings: ExpirySettings
    stores: Stores
    orchestrator: ExpirationOrchestrator
    push: PushChannel
    _closers: list[Callable[[], Awaitable[Any]]] = field(default_factory=list)

    def scheduler(self) -> ExpirationScheduler:
        return ExpirationScheduler(
            self.orchestrator,
            cron_expression=self.settings.expiration_cron,
            timezone=self.settings.timezone,
        )

    async def aclose(self) -> None:
        for close in reversed(self._closers):
            try:
                await close()
            except Exception as e:
                logger.warning("Error closing resource", error=str(e))
        self._closers.clear()


def build_stores(settings: ExpirySettings) -> tuple[Stores, list[Callable[[], Awaitable[Any]]]]:
    if settings.database_url:
        db = PostgresDatabase(settings.database_url)
        stores = Stores(
            reservations=PostgresReservationStore(db),
            vehicles=PostgresVehicleStore(db),
            notifications=PostgresNotificationStore(db),
            users=PostgresUserDirectory(db),
        )
        return stores, [db.close]

    logger.warning("No database configured, using in-memory stores")
    vehicles = InMemoryVehicleStore()
    stores = Stores(
        reservations=InMemoryReservationStore(vehicle_store=vehicles),
        vehicles=vehicles,
        notifications=InMemoryNotificationStore(),
        users=InMemoryUserDirectory(),
    )
    return stores, []


def build_service(
    settings: ExpirySettings,
    stores: Optional[Stores] = None,
    push_channel: Optional[PushChannel] = None,
    lease: Optional[RunLease] = None,
    sleep: Optional[SleepFunc] = None,
) -> ExpiryService:
    """Assemble finder, expirer, reconciler, notifier and orchestrator.

    Explicit ``stores``, ``push_channel`` and ``lease`` take precedence over
    what the settings would select.
    """
    closers: list[Callable[[], Awaitable[Any]]] = []

    if stores is None:
        stores, store_closers = build_stores(settings)
        closers.extend(store_closers)

    if push_channel is None:
        if settings.redis_url:
            redis_push = RedisPushChannel(redis_url=settings.redis_url)
            closers.append(redis_push.close)
            push_channel = redis_push
        else:
            push_channel = ConnectionManager()

    if lease is None:
        if settings.redis_url:
            redis_lease = RedisRunLease(
                redis_url=settings.redis_url,
                ttl_seconds=settings.lease_ttl_seconds,
            )
            closers.append(redis_lease.close)
            lease = redis_lease
        else:
            lease = MemoryRunLease()

    policy = settings.retry_policy()
    orchestrator = ExpirationOrchestrator(
        finder=ExpirationFinder(stores.reservations, page_size=settings.batch_size),
        expirer=ReservationExpirer(stores.reservations, policy=policy, sleep=sleep),
        reconciler=AvailabilityReconciler(
            stores.reservations, stores.vehicles, policy=policy, sleep=sleep
        ),
        notifier=ExpirationNotifier(
            stores.notifications,
            stores.users,
            push_channel=push_channel,
            vehicle_store=stores.vehicles,
            policy=policy,
            sleep=sleep,
        ),
        lease=lease,
    )
    return ExpiryService(
        settings=settings,
        stores=stores,
        orchestrator=orchestrator,
        push=push_channel,
        _closers=closers,
    )


def build_orchestrator(
    settings: ExpirySettings,
    stores: Optional[Stores] = None,
    push_channel: Optional[PushChannel] = None,
    lease: Optional[RunLease] = None,
    sleep: Optional[SleepFunc] = None,
) -> ExpirationOrchestrator:
    return build_service(settings, stores, push_channel, lease, sleep).orchestrator
