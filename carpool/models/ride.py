"""
Ride Model

A vehicle trip shared by up to four attendees leaving the same event.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


MAX_PASSENGERS = 4


class RideStatus(str, Enum):
    """Status of a ride."""

    MATCHING = "matching"  # Has free seats, accepting passengers
    FULL = "full"  # Reached MAX_PASSENGERS
    IN_PROGRESS = "in_progress"  # Departed
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_RIDE_STATUSES = [RideStatus.COMPLETED, RideStatus.CANCELLED]


class Waypoint(BaseModel):
    """One drop-off stop in a ride's computed route."""

    user_id: str
    address: str
    latitude: float
    longitude: float
    order: int = Field(..., ge=1, description="1-based visiting order")
    distance_meters: Optional[float] = Field(
        None, description="Leg distance from the previous stop"
    )
    duration_seconds: Optional[float] = Field(
        None, description="Leg duration from the previous stop"
    )


class Ride(BaseModel):
    """
    Ride model for MongoDB.

    Fields:
    - ride_id: Unique UUID
    - event_id: Event the passengers are leaving
    - departure_time: Earliest max departure time among members
    - depart_now: Leave as soon as possible
    - departure_*: Fixed to the event location
    - current_passenger_count: Active (pending/accepted) requests in this ride
    - revision: Bumped on every membership change, used for compare-and-set
    - route / route_polyline: Ordered drop-offs, None until computed
    - final_cost: Set once at settlement
    """

    ride_id: str = Field(..., description="Unique ride ID")
    event_id: str = Field(..., description="Event ID")
    departure_time: datetime = Field(..., description="Planned departure")
    depart_now: bool = Field(default=False)
    departure_address: str = Field(..., description="Event address")
    departure_latitude: float = Field(..., ge=-90, le=90)
    departure_longitude: float = Field(..., ge=-180, le=180)
    current_passenger_count: int = Field(default=1, ge=0)
    max_passengers: int = Field(default=MAX_PASSENGERS)
    revision: int = Field(default=0)
    status: RideStatus = Field(default=RideStatus.MATCHING)
    final_cost: Optional[float] = Field(None)
    route: Optional[List[Waypoint]] = Field(None)
    route_polyline: Optional[str] = Field(None)
    merged_into: Optional[str] = Field(None, description="Ride that absorbed this one")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = Field(None)

    class Config:
        use_enum_values = True

    @property
    def has_free_seat(self) -> bool:
        return self.current_passenger_count < self.max_passengers
