"""
Core data models for the Meetapp subscription service.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class AdmissionError(str, Enum):
    NOT_FOUND = "not_found"
    SELF_SUBSCRIPTION_FORBIDDEN = "self_subscription_forbidden"
    PAST_MEETUP_FORBIDDEN = "past_meetup_forbidden"
    ALREADY_SUBSCRIBED = "already_subscribed"
    SCHEDULE_CONFLICT = "schedule_conflict"

    @property
    def message(self) -> str:
        return ADMISSION_MESSAGES[self]


ADMISSION_MESSAGES: dict[AdmissionError, str] = {
    AdmissionError.NOT_FOUND: "Meetup not found",
    AdmissionError.SELF_SUBSCRIPTION_FORBIDDEN: "You can't subscribe to your own meetups",
    AdmissionError.PAST_MEETUP_FORBIDDEN: "You can't subscribe to past meetups",
    AdmissionError.ALREADY_SUBSCRIBED: "You are already subscribed to this meetup",
    AdmissionError.SCHEDULE_CONFLICT: "You can't subscribe to two meetups at the same time",
}


# ──────────────────────────────────────────────────────────────
#  Users & Meetups — owned by the CRUD service, read here
# ──────────────────────────────────────────────────────────────

class User(BaseModel):
    id: str
    name: str
    email: str = ""
    locale: str = ""                           # empty → settings.default_locale


class Meetup(BaseModel):
    """A published meetup. `is_past` is derived on every read, never stored."""
    id: str
    organizer_id: str
    organizer: Optional[User] = None
    title: str
    description: str = ""
    location: str = ""
    scheduled_at: datetime

    @field_validator("scheduled_at")
    @classmethod
    def ensure_utc(cls, value: datetime) -> datetime:
        return _aware(value)

    @property
    def is_past(self) -> bool:
        return self.scheduled_at < utcnow()


def _aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so comparisons never raise."""
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Subscription
# ──────────────────────────────────────────────────────────────

class Subscription(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    user_id: str
    meetup_id: str
    scheduled_at: datetime                     # meetup instant at admission time
    created_at: datetime = Field(default_factory=utcnow)


class SubscriptionConfirmation(BaseModel):
    meetup_id: str
    date: datetime


# ──────────────────────────────────────────────────────────────
#  Notification payload
# ──────────────────────────────────────────────────────────────

class MeetupSnapshot(BaseModel):
    """Frozen copy of the meetup details a notification needs."""
    model_config = {"frozen": True}

    meetup_id: str
    title: str
    organizer_name: str
    organizer_email: str
    organizer_locale: str = ""
    scheduled_at: datetime

    @classmethod
    def from_meetup(cls, meetup: Meetup) -> MeetupSnapshot:
        organizer = meetup.organizer or User(id=meetup.organizer_id, name="")
        return cls(
            meetup_id=meetup.id,
            title=meetup.title,
            organizer_name=organizer.name,
            organizer_email=organizer.email,
            organizer_locale=organizer.locale,
            scheduled_at=meetup.scheduled_at,
        )


# ──────────────────────────────────────────────────────────────
#  Admission outcome
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AdmissionResult:
    confirmation: Optional[SubscriptionConfirmation] = None
    error: Optional[AdmissionError] = None
    job_id: str = ""

    @property
    def accepted(self) -> bool:
        return self.error is None

    @classmethod
    def rejected(cls, error: AdmissionError) -> AdmissionResult:
        return cls(error=error)

    def to_dict(self) -> dict[str, Any]:
        if self.error:
            return {"status": "rejected", "error": self.error.value, "message": self.error.message}
        return {"status": "accepted", **self.confirmation.model_dump(mode="json")}
