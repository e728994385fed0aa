"""
Notification Service - Creates in-app notifications for ride events.

Delivery (push, retries) belongs to the notification delivery service,
which reads the `notifications` collection. Sending is fire-and-forget:
failures are logged and never reach the caller.
"""

import logging
import uuid
from typing import Iterable, Optional

from carpool.config import settings
from carpool.database import get_db
from carpool.models.notification import Notification, NotificationType
from carpool.services.notification_tracker import get_notification_tracker

logger = logging.getLogger(__name__)


class NotificationService:
    """Notification sink for the matching engine and lifecycle jobs."""

    async def notify(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        ride_id: Optional[str] = None,
        dedupe_key: Optional[str] = None,
    ) -> Optional[Notification]:
        """
        Create a notification for a user.

        With a dedupe_key, a notification of the same type for the same
        user and key is created at most once.
        """
        notif_type = (
            notification_type.value
            if hasattr(notification_type, "value")
            else str(notification_type)
        )
        tracker = get_notification_tracker()

        try:
            if dedupe_key is not None:
                first_time = await tracker.mark_sent(
                    notif_type,
                    dedupe_key,
                    user_id,
                    ttl_hours=settings.notification_dedupe_ttl_hours,
                )
                if not first_time:
                    logger.debug(f"Skipping duplicate {notif_type} for {user_id} ({dedupe_key})")
                    return None

            notification = Notification(
                notification_id=str(uuid.uuid4()),
                user_id=user_id,
                type=notification_type,
                title=title,
                message=message,
                ride_id=ride_id,
            )

            db = get_db()
            await db.notifications.insert_one(notification.model_dump())
            return notification

        except Exception as e:
            logger.warning(f"Failed to notify {user_id} ({notif_type}): {e}")
            if dedupe_key is not None:
                try:
                    await tracker.unmark(notif_type, dedupe_key, user_id)
                except Exception as unmark_error:
                    logger.warning(f"Failed to clear dedupe mark for {user_id}: {unmark_error}")
            return None

    async def notify_ride_members(
        self,
        user_ids: Iterable[str],
        notification_type: NotificationType,
        title: str,
        message: str,
        ride_id: Optional[str] = None,
        exclude_user_id: Optional[str] = None,
        dedupe_key: Optional[str] = None,
    ) -> int:
        """Notify every member except `exclude_user_id`. Returns count created."""
        sent = 0
        for user_id in user_ids:
            if user_id == exclude_user_id:
                continue
            notification = await self.notify(
                user_id, notification_type, title, message, ride_id, dedupe_key
            )
            if notification:
                sent += 1
        return sent

    # =========================================================================
    # Ride event helpers
    # =========================================================================

    async def notify_ride_match(
        self, ride_id: str, member_ids: list[str], requester_id: str, revision: int
    ) -> int:
        """One notification per member per membership revision."""
        count = len(member_ids)
        dedupe_key = f"{ride_id}:{revision}"
        sent = 0

        others = count - 1
        for user_id in member_ids:
            if user_id == requester_id:
                title = "Shared ride found"
                message = (
                    f"You now share a ride with {others} other "
                    f"{'person' if others == 1 else 'people'}."
                )
            else:
                title = "New passenger"
                message = f"{count} people are now sharing your ride."

            if await self.notify(
                user_id, NotificationType.RIDE_MATCH, title, message, ride_id, dedupe_key
            ):
                sent += 1
        return sent

    async def notify_passenger_left(
        self, ride_id: str, remaining_ids: list[str], revision: int
    ) -> int:
        remaining_count = len(remaining_ids)
        return await self.notify_ride_members(
            remaining_ids,
            NotificationType.PASSENGER_LEFT,
            "A passenger left",
            f"{remaining_count} "
            f"{'person remains' if remaining_count == 1 else 'people remain'} in your ride.",
            ride_id=ride_id,
            dedupe_key=f"{ride_id}:{revision}",
        )

    async def notify_request_expired(
        self, user_id: str, request_id: str, ride_id: Optional[str] = None
    ) -> Optional[Notification]:
        return await self.notify(
            user_id,
            NotificationType.RIDE_CANCELLED,
            "No shared ride found",
            "Your request expired before anyone could share your ride.",
            ride_id=ride_id,
            dedupe_key=request_id,
        )

    async def notify_ride_completed(self, ride_id: str, user_ids: list[str]) -> int:
        return await self.notify_ride_members(
            user_ids,
            NotificationType.RIDE_COMPLETED,
            "Ride completed",
            "Your shared ride is complete.",
            ride_id=ride_id,
            dedupe_key=ride_id,
        )
