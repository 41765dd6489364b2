"""Shared fakes and fixtures."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from travelpet.channel import DeliveryChannel
from travelpet.controller import ConversationController
from travelpet.domain import DeliveryError, ScheduleOption
from travelpet.repository import MemoryRepository
from travelpet.schedule import ScheduleQuery
from travelpet.sessions import SessionManager
from travelpet.trips import TripService

MSK = timezone(timedelta(hours=3))
NOW = datetime(2026, 1, 23, 12, 0, tzinfo=MSK)

TAGANROG = "s9613483"
ROSTOV = "s9612913"


def make_options(n, first=None, step=timedelta(minutes=40)):
    first = first or NOW + timedelta(minutes=15)
    out = []
    for i in range(n):
        dep = first + i * step
        out.append(ScheduleOption(
            train_id=f"6{i:03d}",
            title=f"Таганрог — Ростов #{i}",
            departure_time=dep,
            arrival_time=dep + timedelta(minutes=90),
            duration=5400,
        ))
    return out


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


class FakeProvider:
    """Answers by calendar day; records every call."""

    def __init__(self, by_day=None, error=None):
        self.by_day = by_day or {}
        self.error = error
        self.calls = []

    async def get_options(self, from_code, to_code, date):
        self.calls.append((from_code, to_code, date))
        if self.error:
            raise self.error
        return list(self.by_day.get(date.date(), []))


class FakeChannel(DeliveryChannel):
    """Records deliveries and tracks how many are in flight at once."""

    def __init__(self, delay=0.0, fail_chats=(), hang_chats=()):
        self.delay = delay
        self.fail_chats = set(fail_chats)
        self.hang_chats = set(hang_chats)
        self.sent = []
        self.edits = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.fail_edits = False
        self._next_id = 100

    async def send_text(self, chat_id, text, keyboard=None, markdown=False):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if chat_id in self.hang_chats:
                await asyncio.sleep(3600)
            if self.delay:
                await asyncio.sleep(self.delay)
            if chat_id in self.fail_chats:
                raise DeliveryError("chat unavailable")
            self.sent.append((chat_id, text))
            self._next_id += 1
            return self._next_id
        finally:
            self.in_flight -= 1

    async def edit_text(self, chat_id, message_id, text, keyboard=None, markdown=False):
        if self.fail_edits:
            raise DeliveryError("message can't be edited")
        self.edits.append((chat_id, message_id, text))


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def repo():
    return MemoryRepository()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def trips(repo):
    return TripService(repo)


@pytest.fixture
def controller(trips, provider, clock):
    return ConversationController(trips, ScheduleQuery(provider), clock)


@pytest.fixture
def sessions(clock):
    return SessionManager(clock, ttl=timedelta(minutes=30))
