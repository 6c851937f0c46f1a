"""Store interfaces and implementations."""
from .base import NotificationStore, ReservationStore, UserDirectory, VehicleStore
from .memory import (
    InMemoryNotificationStore,
    InMemoryReservationStore,
    InMemoryUserDirectory,
    InMemoryVehicleStore,
)

__all__ = [
    "ReservationStore",
    "VehicleStore",
    "NotificationStore",
    "UserDirectory",
    "InMemoryReservationStore",
    "InMemoryVehicleStore",
    "InMemoryNotificationStore",
    "InMemoryUserDirectory",
]
