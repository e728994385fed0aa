"""
Ride Request Model

Defines the ride request schema for MongoDB persistence.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class RideRequestStatus(str, Enum):
    """Status of a ride request."""

    PENDING = "pending"  # Waiting for a shared ride
    MATCHED = "matched"  # Reserved by the engine, not yet confirmed
    ACCEPTED = "accepted"  # Holds a seat in its ride
    CANCELLED = "cancelled"
    COMPLETED = "completed"


# Requests counted in Ride.current_passenger_count
ACTIVE_REQUEST_STATUSES = [RideRequestStatus.PENDING, RideRequestStatus.ACCEPTED]

NON_TERMINAL_REQUEST_STATUSES = [
    RideRequestStatus.PENDING,
    RideRequestStatus.MATCHED,
    RideRequestStatus.ACCEPTED,
]


class Gender(str, Enum):
    FEMALE = "F"
    MALE = "M"
    OTHER = "O"


class Destination(BaseModel):
    """Drop-off location of a passenger."""

    address: str = Field(..., min_length=1, max_length=300)
    city: Optional[str] = None
    postcode: Optional[str] = None
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)

    @property
    def coordinates(self) -> tuple[float, float]:
        """(lat, lng) tuple as used by geopy and the route provider."""
        return (self.latitude, self.longitude)


class RideRequest(BaseModel):
    """
    Ride request model for MongoDB.

    Fields:
    - request_id: Unique UUID for the request
    - ride_id: Ride currently holding this request
    - user_id / event_id: Requester and the event being left
    - max_departure_time: Latest acceptable departure
    - destination: Personal drop-off
    - female_only: Hard constraint, never violated
    - gender: Requester gender snapshot taken at creation
    - is_initiator: True only for the request that created its ride
    """

    request_id: str = Field(..., description="Unique request ID")
    ride_id: Optional[str] = Field(None, description="Assigned ride")
    user_id: str = Field(..., description="User who created the request")
    event_id: str = Field(..., description="Event ID")
    max_departure_time: datetime = Field(..., description="Latest departure")
    destination: Destination
    female_only: bool = Field(default=False, description="Female-only constraint")
    gender: Optional[Gender] = Field(None, description="M/F/O or None")
    is_initiator: bool = Field(default=False)
    status: RideRequestStatus = Field(default=RideRequestStatus.PENDING)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    matched_at: Optional[datetime] = Field(None)
    resolved_at: Optional[datetime] = Field(None)

    class Config:
        use_enum_values = True


class RideRequestCreate(BaseModel):
    """Data required to create a new ride request."""

    event_id: str
    max_departure_time: datetime
    destination_address: str = Field(..., min_length=1, max_length=300)
    destination_city: Optional[str] = None
    destination_postcode: Optional[str] = None
    destination_lat: Optional[float] = Field(None, ge=-90, le=90)
    destination_lng: Optional[float] = Field(None, ge=-180, le=180)
    female_only: bool = False
    depart_now: bool = False
