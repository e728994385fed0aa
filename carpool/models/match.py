"""
Match Result Model

Outcome of a single matching attempt.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class MatchReason(str, Enum):
    """Why an attempt ended the way it did."""

    MATCHED = "matched"
    ALREADY_RESOLVED = "already_resolved"
    NO_CANDIDATES = "no_candidates"
    GENDER_FILTERED = "gender_filtered"
    GEO_TOO_FAR = "geo_too_far"
    DETOUR_TOO_LARGE = "detour_too_large"
    RIDES_FULL = "rides_full"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    CAPACITY_CONFLICT = "capacity_conflict"


REASON_MESSAGES = {
    MatchReason.MATCHED: "You now share a ride with other attendees.",
    MatchReason.ALREADY_RESOLVED: "This request is no longer waiting for a match.",
    MatchReason.NO_CANDIDATES: "No other attendees are leaving around that time yet.",
    MatchReason.GENDER_FILTERED: "No compatible ride matches your gender preference.",
    MatchReason.GEO_TOO_FAR: "Other destinations are too far from yours.",
    MatchReason.DETOUR_TOO_LARGE: "Sharing a ride would add too much of a detour.",
    MatchReason.RIDES_FULL: "All compatible rides are full.",
    MatchReason.PROVIDER_UNAVAILABLE: "Routing is unavailable, we will retry shortly.",
    MatchReason.CAPACITY_CONFLICT: "The ride filled up meanwhile, we will retry shortly.",
}


class MatchResult(BaseModel):
    matched: bool
    reason: MatchReason
    ride_id: Optional[str] = None
    message: str = ""

    class Config:
        use_enum_values = True

    @classmethod
    def for_reason(
        cls, reason: MatchReason, ride_id: Optional[str] = None
    ) -> "MatchResult":
        return cls(
            matched=reason == MatchReason.MATCHED,
            reason=reason,
            ride_id=ride_id,
            message=REASON_MESSAGES[reason],
        )
