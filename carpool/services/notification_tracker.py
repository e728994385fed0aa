"""
Notification Tracker Service

Prevents duplicate notifications across sweeps, restarts and worker
processes. State lives in Redis.
"""

from datetime import timedelta
import hashlib

from carpool.database import get_redis
from carpool.utils.timezone_utils import utc_now


class NotificationTracker:
    """Track sent notifications so a repeated sweep never re-sends them."""

    def __init__(self):
        self._prefix = "notif_sent"

    def _make_key(self, notification_type: str, target_id: str, user_id: str) -> str:
        """
        Create unique key for a notification.

        Args:
            notification_type: Type of notification (e.g., 'ride_match')
            target_id: ID of target entity (e.g., ride_id plus revision)
            user_id: User receiving the notification

        Returns:
            Redis key for tracking
        """
        composite = f"{notification_type}:{target_id}:{user_id}"
        # Use hash to keep key short
        key_hash = hashlib.sha256(composite.encode()).hexdigest()[:16]
        return f"{self._prefix}:{key_hash}"

    async def mark_sent(
        self, notification_type: str, target_id: str, user_id: str, ttl_hours: int = 24
    ) -> bool:
        """
        Mark notification as sent.

        Returns:
            True if marked (was not already sent), False if already sent
        """
        key = self._make_key(notification_type, target_id, user_id)

        # SET NX is atomic, concurrent senders cannot both win
        redis_client = get_redis()
        was_set = await redis_client.set(
            key,
            utc_now().isoformat(),
            ex=int(timedelta(hours=ttl_hours).total_seconds()),
            nx=True,
        )

        return bool(was_set)

    async def unmark(self, notification_type: str, target_id: str, user_id: str):
        """Forget a mark, used when delivery failed after marking."""
        key = self._make_key(notification_type, target_id, user_id)
        redis_client = get_redis()
        await redis_client.delete(key)


# Singleton instance
_tracker = None


def get_notification_tracker() -> NotificationTracker:
    """Get singleton notification tracker instance."""
    global _tracker
    if _tracker is None:
        _tracker = NotificationTracker()
    return _tracker
