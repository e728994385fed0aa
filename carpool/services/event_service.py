"""
Event Service

Read-only access to data owned by other services: events, tickets and
user profiles.
"""

from typing import Optional

from carpool.database import get_db
from carpool.models.event import Event
from carpool.models.ride_request import Gender


class EventService:
    async def get_event(self, event_id: str) -> Optional[Event]:
        db = get_db()
        doc = await db.events.find_one({"event_id": event_id})
        if not doc:
            return None
        return Event(**doc)

    async def has_valid_ticket(self, user_id: str, event_id: str) -> bool:
        """Eligibility gate: the user holds a valid ticket for the event."""
        db = get_db()
        ticket = await db.tickets.find_one(
            {"user_id": user_id, "event_id": event_id, "status": "valid"}
        )
        return ticket is not None

    async def get_user_gender(self, user_id: str) -> Optional[Gender]:
        db = get_db()
        user = await db.users.find_one({"user_id": user_id}, {"gender": 1})
        if not user or user.get("gender") not in {g.value for g in Gender}:
            return None
        return Gender(user["gender"])
