"""Per-user booking sessions.

A Session lives in memory only.  SessionManager hands a session out under a
per-user asyncio.Lock, so two updates from the same user never interleave a
read-modify-write while different users proceed in parallel.
"""

from __future__ import annotations

import asyncio
import logging
import math
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import AsyncIterator, Callable

from travelpet.domain import ScheduleOption
from travelpet.stations import Station

logger = logging.getLogger(__name__)

PAGE_SIZE = 5
MAX_RECENT_STATIONS = 5


class ConversationState(str, Enum):
    NONE = "none"
    SELECTING_FROM = "selecting_from"
    SELECTING_TO = "selecting_to"
    WAITING_FROM = "waiting_from"      # manual text entry
    WAITING_TO = "waiting_to"          # manual text entry
    SHOWING_SCHEDULE = "showing_schedule"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (ConversationState.CONFIRMED, ConversationState.CANCELLED)


@dataclass
class Session:
    user_id: int
    date: datetime
    state: ConversationState = ConversationState.NONE
    state_history: list[ConversationState] = field(
        default_factory=lambda: [ConversationState.NONE])
    from_code: str = ""
    from_name: str = ""
    to_code: str = ""
    to_name: str = ""
    schedule_results: list[ScheduleOption] = field(default_factory=list)
    schedule_page: int = 0
    schedule_date: datetime | None = None  # the next day's midnight after an empty search
    recent_stations: list[Station] = field(default_factory=list)
    last_active: datetime | None = None

    def reset(self, now: datetime) -> None:
        """Start a fresh booking.  Recent stations survive."""
        self.state = ConversationState.SELECTING_FROM
        self.state_history = [ConversationState.SELECTING_FROM]
        self.from_code = self.from_name = ""
        self.to_code = self.to_name = ""
        self.date = now
        self.schedule_results = []
        self.schedule_page = 0
        self.schedule_date = None

    def transition(self, new_state: ConversationState) -> None:
        self.state_history.append(new_state)
        self.state = new_state

    def back(self) -> ConversationState | None:
        """Pop the current state; None when there is no previous step."""
        if len(self.state_history) < 2:
            return None
        self.state_history.pop()
        self.state = self.state_history[-1]
        return self.state

    def remember_station(self, station: Station) -> None:
        """Move *station* to the front of the recent list, deduplicated by code."""
        recent = [s for s in self.recent_stations if s.code != station.code]
        recent.insert(0, station)
        self.recent_stations = recent[:MAX_RECENT_STATIONS]

    @property
    def from_label(self) -> str:
        return self.from_name or self.from_code

    @property
    def to_label(self) -> str:
        return self.to_name or self.to_code


# ────────────────────────────────────────────────────────────────────────────
# Pagination
# ────────────────────────────────────────────────────────────────────────────


@dataclass
class Page:
    index: int
    total: int
    start: int
    items: list

    @property
    def has_prev(self) -> bool:
        return self.index > 0

    @property
    def has_next(self) -> bool:
        return self.index < self.total - 1


def total_pages(count: int, size: int = PAGE_SIZE) -> int:
    return math.ceil(count / size)


def page_exists(count: int, index: int, size: int = PAGE_SIZE) -> bool:
    return 0 <= index < total_pages(count, size)


def paginate(items: list, index: int, size: int = PAGE_SIZE) -> Page:
    """Slice page *index* out of *items*.  Out-of-range pages come back empty."""
    start = index * size
    return Page(index=index, total=total_pages(len(items), size),
                start=start, items=list(items[start:start + size]) if index >= 0 else [])


# ────────────────────────────────────────────────────────────────────────────
# Session manager
# ────────────────────────────────────────────────────────────────────────────


class SessionManager:

    def __init__(
        self,
        clock: Callable[[], datetime],
        ttl: timedelta | None = None,
    ) -> None:
        self.clock = clock
        self.ttl = ttl
        self._sessions: dict[int, Session] = {}
        self._locks: dict[int, asyncio.Lock] = {}
        self._users: dict[int, int] = {}  # callers holding or awaiting each lock

    def __len__(self) -> int:
        return len(self._sessions)

    def peek(self, user_id: int) -> Session | None:
        return self._sessions.get(user_id)

    @asynccontextmanager
    async def session(self, user_id: int) -> AsyncIterator[Session]:
        """Hold *user_id*'s lock and yield its session, created lazily.

        A session left in a terminal state is deleted on exit, and its lock
        with it once no other caller is queued on it.
        """
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._users[user_id] = self._users.get(user_id, 0) + 1
        try:
            async with lock:
                session = self._sessions.get(user_id)
                if session is None:
                    session = Session(user_id=user_id, date=self.clock())
                    self._sessions[user_id] = session
                session.last_active = self.clock()
                try:
                    yield session
                finally:
                    if session.state.terminal:
                        self._sessions.pop(user_id, None)
                        logger.debug("Session for %d closed (%s).", user_id, session.state.value)
        finally:
            self._users[user_id] -= 1
            if not self._users[user_id]:
                del self._users[user_id]
                if user_id not in self._sessions:
                    self._locks.pop(user_id, None)

    def reap(self) -> int:
        """Drop sessions idle longer than the TTL.  Sessions in use are skipped."""
        if self.ttl is None:
            return 0
        cutoff = self.clock() - self.ttl
        expired = [
            uid for uid, s in self._sessions.items()
            if s.last_active is not None and s.last_active < cutoff
            and uid not in self._users
        ]
        for uid in expired:
            del self._sessions[uid]
            self._locks.pop(uid, None)
        if expired:
            logger.info("Reaped %d idle session(s).", len(expired))
        return len(expired)

    async def reaper_loop(self, stop: asyncio.Event, interval: float = 60) -> None:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                self.reap()
