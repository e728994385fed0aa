"""
Notification Model - Defines the in-app notification schema handed to the
delivery service.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class NotificationType(str, Enum):
    """Type of notification."""

    RIDE_MATCH = "ride_match"
    RIDE_CANCELLED = "ride_cancelled"
    PASSENGER_LEFT = "passenger_left"
    RIDE_COMPLETED = "ride_completed"


class Notification(BaseModel):
    """
    Notification model for MongoDB.

    Fields:
    - notification_id: Unique UUID
    - user_id: Target user
    - type: Notification type for UI rendering
    - title / message: Display text
    - ride_id: Related ride, if any
    - read: Whether user has read the notification
    """

    notification_id: str = Field(..., description="Unique notification ID")
    user_id: str = Field(..., description="Target user ID")
    type: NotificationType
    title: str = Field(..., description="Notification title")
    message: str = Field(..., description="Notification body")
    ride_id: Optional[str] = Field(None, description="Related ride")
    read: bool = Field(default=False)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Config:
        use_enum_values = True
