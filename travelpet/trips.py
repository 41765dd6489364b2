"""Trip use cases: registration, validation and confirmation."""

from __future__ import annotations

import logging
from datetime import timedelta

from travelpet.domain import (
    ConflictError,
    NotFoundError,
    Reminder,
    ReminderStatus,
    Trip,
    User,
    ValidationError,
)
from travelpet.repository import Repository

logger = logging.getLogger(__name__)

REMINDER_LEAD = timedelta(minutes=30)

REMINDER_TEXT = "⏰ Your train from {station} leaves in 30 minutes! Don't be late."


class TripService:

    def __init__(self, repo: Repository) -> None:
        self.repo = repo

    async def ensure_user(
        self, external_id: int, name: str = "", username: str = "",
        chat_id: int | None = None,
    ) -> User:
        """Return the user registered under *external_id*, creating it if needed."""
        if not external_id:
            raise ValidationError("Telegram ID must not be empty.")
        try:
            return await self.repo.get_user_by_external_id(external_id)
        except NotFoundError:
            pass
        user = User(external_id=external_id, name=name, username=username, chat_id=chat_id)
        try:
            await self.repo.create_user(user)
        except ConflictError:
            # Lost a registration race with another update from the same user
            return await self.repo.get_user_by_external_id(external_id)
        logger.info("Registered user %d (external %d).", user.id, external_id)
        return user

    async def resolve_user(self, external_id: int) -> User:
        return await self.repo.get_user_by_external_id(external_id)

    async def create_trip(self, trip: Trip) -> int:
        if trip.departure_time is None:
            raise ValidationError("Departure time must not be empty.")
        if not trip.from_code or not trip.to_code:
            raise ValidationError("Departure and destination stations must not be empty.")
        return await self.repo.create_trip(trip)

    async def confirm_trip(self, trip: Trip, from_name: str) -> Reminder:
        """Commit *trip* and schedule its reminder REMINDER_LEAD before departure.

        The two writes are separate: if the reminder fails the trip stays
        committed and the error propagates to the caller.
        """
        await self.create_trip(trip)
        reminder = Reminder(
            trip_id=trip.id,
            user_id=trip.user_id,
            message=REMINDER_TEXT.format(station=from_name or trip.from_code),
            trigger_at=trip.departure_time - REMINDER_LEAD,
            status=ReminderStatus.PENDING,
        )
        try:
            await self.repo.create_reminder(reminder)
        except Exception:
            logger.error("Trip %d committed but its reminder was not created.", trip.id)
            raise
        logger.info("Trip %d confirmed, reminder %d due at %s.",
                    trip.id, reminder.id, reminder.trigger_at.isoformat())
        return reminder

    async def trips_of(self, external_id: int) -> list[Trip]:
        user = await self.repo.get_user_by_external_id(external_id)
        return await self.repo.get_trips_by_user(user.id)
