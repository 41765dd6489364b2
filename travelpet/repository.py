"""Persistence boundary for users, trips and reminders.

Every call is atomic from the caller's point of view and hands out copies,
so callers can never mutate stored state by accident.

Two implementations:
- MemoryRepository  – process-local, used by tests and throwaway runs.
- JsonRepository    – same semantics, snapshot written to data/store.json
                      after every mutation and loaded back on start.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from travelpet.domain import (
    ConflictError,
    NotFoundError,
    Reminder,
    ReminderStatus,
    TransientError,
    Trip,
    User,
)

logger = logging.getLogger(__name__)


class Repository(ABC):

    @abstractmethod
    async def create_user(self, user: User) -> int:
        """Store *user*; ConflictError if the external ID is taken."""

    @abstractmethod
    async def get_user_by_external_id(self, external_id: int) -> User:
        """NotFoundError if no user has this external ID."""

    @abstractmethod
    async def get_user_by_id(self, user_id: int) -> User:
        """NotFoundError if the ID is unknown."""

    @abstractmethod
    async def create_trip(self, trip: Trip) -> int:
        """Store *trip*; ConflictError on a duplicate (user, from, to, departure)."""

    @abstractmethod
    async def get_trips_by_user(self, user_id: int) -> list[Trip]:
        """All trips of a user, in creation order."""

    @abstractmethod
    async def create_reminder(self, reminder: Reminder) -> int:
        """Store *reminder* as pending; ConflictError if its trip already has one."""

    @abstractmethod
    async def mark_reminder_sent(self, reminder_id: int) -> None:
        """Set status to sent.  Idempotent; NotFoundError for an unknown ID."""

    @abstractmethod
    async def get_pending_reminders(self, as_of: datetime) -> list[Reminder]:
        """Pending reminders with trigger_at <= as_of, earliest first."""


class MemoryRepository(Repository):

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._users: dict[int, User] = {}
        self._trips: dict[int, Trip] = {}
        self._reminders: dict[int, Reminder] = {}
        self._next_id = {"users": 1, "trips": 1, "reminders": 1}

    def _allocate(self, table: str) -> int:
        new_id = self._next_id[table]
        self._next_id[table] = new_id + 1
        return new_id

    async def _changed(self) -> None:
        """Hook run under the lock after every mutation."""

    async def _persist(self, undo: Callable[[], None]) -> None:
        """Run the change hook; if it fails, *undo* the in-memory change."""
        try:
            await self._changed()
        except Exception:
            undo()
            raise

    # ── users ──

    async def create_user(self, user: User) -> int:
        async with self._lock:
            if any(u.external_id == user.external_id for u in self._users.values()):
                raise ConflictError("This user is already registered.")
            new_id = self._allocate("users")
            self._users[new_id] = replace(user, id=new_id)
            await self._persist(lambda: self._users.pop(new_id))
            user.id = new_id
        logger.debug("User %d created for external ID %d.", user.id, user.external_id)
        return user.id

    async def get_user_by_external_id(self, external_id: int) -> User:
        async with self._lock:
            for u in self._users.values():
                if u.external_id == external_id:
                    return replace(u)
        raise NotFoundError("User not found. Send /start to register.")

    async def get_user_by_id(self, user_id: int) -> User:
        async with self._lock:
            u = self._users.get(user_id)
            if u is None:
                raise NotFoundError(f"User {user_id} not found.")
            return replace(u)

    # ── trips ──

    async def create_trip(self, trip: Trip) -> int:
        async with self._lock:
            for t in self._trips.values():
                if (t.user_id, t.from_code, t.to_code, t.departure_time) == (
                    trip.user_id, trip.from_code, trip.to_code, trip.departure_time,
                ):
                    raise ConflictError("A trip with these parameters already exists.")
            new_id = self._allocate("trips")
            self._trips[new_id] = replace(trip, id=new_id)
            await self._persist(lambda: self._trips.pop(new_id))
            trip.id = new_id
        logger.debug("Trip %d created for user %d.", trip.id, trip.user_id)
        return trip.id

    async def get_trips_by_user(self, user_id: int) -> list[Trip]:
        async with self._lock:
            return [replace(t) for t in self._trips.values() if t.user_id == user_id]

    # ── reminders ──

    async def create_reminder(self, reminder: Reminder) -> int:
        async with self._lock:
            if any(r.trip_id == reminder.trip_id for r in self._reminders.values()):
                raise ConflictError("A reminder for this trip already exists.")
            new_id = self._allocate("reminders")
            self._reminders[new_id] = replace(reminder, id=new_id, status=ReminderStatus.PENDING)
            await self._persist(lambda: self._reminders.pop(new_id))
            reminder.id, reminder.status = new_id, ReminderStatus.PENDING
        logger.debug("Reminder %d created for trip %d at %s.",
                     reminder.id, reminder.trip_id, reminder.trigger_at.isoformat())
        return reminder.id

    async def mark_reminder_sent(self, reminder_id: int) -> None:
        async with self._lock:
            r = self._reminders.get(reminder_id)
            if r is None:
                raise NotFoundError(f"Reminder {reminder_id} not found.")
            if r.status == ReminderStatus.SENT:
                return
            previous = r.status
            r.status = ReminderStatus.SENT
            await self._persist(lambda: setattr(r, "status", previous))

    async def get_pending_reminders(self, as_of: datetime) -> list[Reminder]:
        async with self._lock:
            due = [
                replace(r) for r in self._reminders.values()
                if r.status == ReminderStatus.PENDING and r.trigger_at <= as_of
            ]
        due.sort(key=lambda r: r.trigger_at)
        return due

    async def get_reminder(self, reminder_id: int) -> Reminder:
        async with self._lock:
            r = self._reminders.get(reminder_id)
            if r is None:
                raise NotFoundError(f"Reminder {reminder_id} not found.")
            return replace(r)


# ────────────────────────────────────────────────────────────────────────────
# JSON snapshot
# ────────────────────────────────────────────────────────────────────────────


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class JsonRepository(MemoryRepository):
    """MemoryRepository that mirrors its tables into one JSON file."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = path
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.error("Could not read %s: %s", self.path, e)
            raise

        for u in data.get("users", []):
            self._users[u["id"]] = User(**u)
        for t in data.get("trips", []):
            t["departure_time"] = _parse_ts(t["departure_time"])
            self._trips[t["id"]] = Trip(**t)
        for r in data.get("reminders", []):
            r["trigger_at"] = _parse_ts(r["trigger_at"])
            r["status"] = ReminderStatus(r["status"])
            self._reminders[r["id"]] = Reminder(**r)

        self._next_id = {
            "users": max(self._users, default=0) + 1,
            "trips": max(self._trips, default=0) + 1,
            "reminders": max(self._reminders, default=0) + 1,
        }
        logger.info("Loaded %d user(s), %d trip(s), %d reminder(s) from %s.",
                    len(self._users), len(self._trips), len(self._reminders), self.path)

    def _snapshot(self) -> dict[str, Any]:
        return {
            "users": [vars(u) for u in self._users.values()],
            "trips": [
                {**vars(t), "departure_time": _ts(t.departure_time)}
                for t in self._trips.values()
            ],
            "reminders": [
                {**vars(r), "trigger_at": _ts(r.trigger_at), "status": r.status.value}
                for r in self._reminders.values()
            ],
        }

    async def _changed(self) -> None:
        # Written next to the store and renamed, so a failed write never
        # leaves a truncated store.json behind.
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(self._snapshot(), f, indent=2, ensure_ascii=False)
            tmp.replace(self.path)
        except OSError as e:
            logger.error("Could not write %s: %s", self.path, e)
            raise TransientError("Storage is unavailable right now. Please try again.") from e
