"""
Customer and admin notifications for expired reservations.

Notifications are persisted first and pushed second. The persisted row is the
durable record and the push is a courtesy for users who are online. Nothing
here can undo an expiration: every failure ends as a log line and a falsy
return value.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Optional, Sequence

from .constants import PUSH_EVENT_NOTIFICATION, NotificationType, UserRole
from .logging import get_logger
from .models import Notification, Reservation
from .push import NullPushChannel, PushChannel
from .retry import RetryPolicy, SleepFunc, retry_call
from .stores.base import NotificationStore, UserDirectory, VehicleStore

logger = get_logger(__name__)


def _format_date(value: date | datetime) -> str:
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


def customer_message(reservation: Reservation, descriptor: str) -> str:
    return (
        f"Your booking for {descriptor} (Reference: {reservation.reference}) has expired. "
        f"The booking was scheduled for {_format_date(reservation.start_date)} "
        f"to {_format_date(reservation.end_date)}."
    )


def admin_digest_message(references: Sequence[str]) -> str:
    count = len(references)
    verb = "bookings have" if count > 1 else "booking has"
    return f"{count} {verb} expired. References: {', '.join(references)}"


class ExpirationNotifier:
    """Tells the booking's creator, and once per run every admin, about expirations."""

    def __init__(
        self,
        notification_store: NotificationStore,
        user_directory: UserDirectory,
        push_channel: Optional[PushChannel] = None,
        vehicle_store: Optional[VehicleStore] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Optional[SleepFunc] = None,
    ) -> None:
        self._notifications = notification_store
        self._users = user_directory
        self._push = push_channel or NullPushChannel()
        self._vehicles = vehicle_store
        self._policy = policy or RetryPolicy()
        self._sleep = sleep

    async def _describe_vehicle(self, reservation: Reservation) -> str:
        if reservation.vehicle is not None:
            return reservation.vehicle.descriptor
        if self._vehicles is not None:
            try:
                vehicle = await self._vehicles.get(reservation.vehicle_id)
            except Exception as e:
                logger.warning(
                    "Failed to look up car for notification",
                    vehicle_id=reservation.vehicle_id,
                    error=str(e),
                )
                vehicle = None
            if vehicle is not None:
                return vehicle.descriptor
        return f"vehicle {reservation.vehicle_id}"

    async def _push_notification(self, notification: Notification, **extra) -> None:
        try:
            await self._push.send(
                notification.recipient_id,
                PUSH_EVENT_NOTIFICATION,
                notification.to_payload(**extra),
            )
        except Exception as e:
            logger.warning(
                "Failed to push notification",
                recipient_id=notification.recipient_id,
                notification_type=str(notification.type),
                error=str(e),
            )

    async def notify_customer(self, reservation: Reservation) -> bool:
        """
        Notify the user who created the reservation that it expired.

        Returns:
            True if the notification was stored, False otherwise
        """
        try:
            descriptor = await self._describe_vehicle(reservation)
            notification = Notification(
                recipient_id=reservation.created_by,
                type=NotificationType.BOOKING_EXPIRED,
                message=customer_message(reservation, descriptor),
            )
        except Exception as e:
            logger.error(
                "Failed to build expiration notification",
                reservation_id=reservation.id,
                error=str(e),
            )
            return False

        outcome = await retry_call(
            self._notifications.create,
            notification,
            policy=self._policy,
            retry_message="Failed to create expiration notification, retrying",
            log_fields={"reservation_id": reservation.id},
            sleep=self._sleep,
            log=logger,
        )
        if not outcome.success:
            logger.error(
                "Failed to create expiration notification after max retries",
                reservation_id=reservation.id,
                reference=reservation.reference,
                attempts=outcome.attempts,
                error=outcome.error,
            )
            return False

        stored = outcome.value or notification
        await self._push_notification(stored, bookingId=reservation.id)
        logger.debug(
            "Expiration notification sent",
            reservation_id=reservation.id,
            recipient_id=stored.recipient_id,
        )
        return True

    async def notify_admins(self, expired: Sequence[Reservation]) -> int:
        """
        Send one digest of the run's expirations to every admin.

        Returns:
            Number of admins notified. 0 when nothing expired, no admin
            exists, or delivery failed.
        """
        if not expired:
            return 0

        try:
            admins = await self._users.find_by_role(UserRole.ADMIN)
        except Exception as e:
            logger.error("Failed to look up admin users", error=str(e))
            return 0

        if not admins:
            logger.warning("No admin users found to notify about booking expirations")
            return 0

        references = [reservation.reference for reservation in expired]
        message = admin_digest_message(references)
        digests = [
            Notification(
                recipient_id=admin.id,
                type=NotificationType.BOOKINGS_EXPIRED_ADMIN,
                message=message,
            )
            for admin in admins
        ]

        outcome = await retry_call(
            self._notifications.create_many,
            digests,
            policy=self._policy,
            retry_message="Failed to create admin notifications, retrying",
            log_fields={"admin_count": len(digests)},
            sleep=self._sleep,
            log=logger,
        )
        if not outcome.success:
            logger.error(
                "Failed to send admin notifications for expired bookings",
                admin_count=len(digests),
                attempts=outcome.attempts,
                error=outcome.error,
            )
            return 0

        stored = outcome.value or digests
        for digest in stored:
            await self._push_notification(digest, expiredCount=len(expired))

        logger.info(
            "Admin notifications sent for expired bookings",
            admin_count=len(stored),
            expired_count=len(expired),
            references=references,
        )
        return len(stored)
