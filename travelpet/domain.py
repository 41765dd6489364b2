"""Domain records and the error taxonomy shared by every layer."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

# ────────────────────────────────────────────────────────────────────────────
# Errors
#
# Every message is shown to the user verbatim, so keep them short and plain.
# ────────────────────────────────────────────────────────────────────────────


class TravelPetError(Exception):
    """Base class for errors that resolve to a message for the user."""


class ValidationError(TravelPetError):
    """Input rejected before any persistence call."""


class ConflictError(TravelPetError):
    """A uniqueness constraint was violated."""


class NotFoundError(TravelPetError):
    """A referenced record, station or step does not exist."""


class TransientError(TravelPetError):
    """Provider, network or timeout failure; retrying later may succeed."""


class DeliveryError(TransientError):
    """The message channel refused or failed to deliver a message."""


# ────────────────────────────────────────────────────────────────────────────
# Records
# ────────────────────────────────────────────────────────────────────────────


class ReminderStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class User:
    external_id: int          # Telegram user ID
    name: str = ""
    username: str = ""
    chat_id: int | None = None  # where reminders go; defaults to external_id
    id: int | None = None

    @property
    def delivery_chat(self) -> int:
        return self.chat_id if self.chat_id is not None else self.external_id


@dataclass
class Trip:
    user_id: int
    from_code: str
    to_code: str
    departure_time: datetime | None
    book_id: int | None = None
    id: int | None = None


@dataclass
class Reminder:
    trip_id: int
    user_id: int
    message: str
    trigger_at: datetime
    status: ReminderStatus = ReminderStatus.PENDING
    id: int | None = None


@dataclass(frozen=True)
class ScheduleOption:
    """One candidate train returned by the schedule provider."""

    train_id: str
    title: str
    departure_time: datetime
    arrival_time: datetime
    duration: float  # seconds
