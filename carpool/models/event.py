"""
Event Model

Read-only view of events owned by the events service.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class Event(BaseModel):
    event_id: str
    name: str
    location: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    start_date: datetime
    end_date: Optional[datetime] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None
