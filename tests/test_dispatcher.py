"""Reminder dispatcher: ticks, retries, bounded fan-out and poller lifecycle."""

import asyncio
from datetime import timedelta

import pytest

from conftest import NOW, FakeChannel
from travelpet.dispatcher import ReminderDispatcher
from travelpet.domain import Reminder, ReminderStatus, TransientError, User


async def add_user(repo, external_id, chat_id=None):
    user = User(external_id=external_id, name=f"u{external_id}", chat_id=chat_id)
    await repo.create_user(user)
    return user


async def add_reminder(repo, user, trip_id, due=NOW - timedelta(minutes=1), text="⏰ Train soon"):
    return await repo.create_reminder(Reminder(trip_id, user.id, text, due))


def make_dispatcher(repo, channel, clock, **kw):
    kw.setdefault("interval", 0.01)
    return ReminderDispatcher(repo, channel, clock, **kw)


@pytest.mark.asyncio
async def test_due_reminder_is_delivered_and_marked_sent(repo, clock):
    user = await add_user(repo, 42, chat_id=4200)
    rid = await add_reminder(repo, user, trip_id=1)
    await add_reminder(repo, user, trip_id=2, due=NOW + timedelta(minutes=5))
    channel = FakeChannel()

    sent = await make_dispatcher(repo, channel, clock).tick()

    assert sent == 1
    assert channel.sent == [(4200, "⏰ Train soon")]
    assert (await repo.get_reminder(rid)).status == ReminderStatus.SENT


@pytest.mark.asyncio
async def test_chat_defaults_to_telegram_id(repo, clock):
    user = await add_user(repo, 42)
    await add_reminder(repo, user, trip_id=1)
    channel = FakeChannel()
    await make_dispatcher(repo, channel, clock).tick()
    assert channel.sent[0][0] == 42


@pytest.mark.asyncio
async def test_failed_delivery_is_retried_next_tick(repo, clock):
    user = await add_user(repo, 42)
    rid = await add_reminder(repo, user, trip_id=1)
    channel = FakeChannel(fail_chats={42})
    dispatcher = make_dispatcher(repo, channel, clock)

    assert await dispatcher.tick() == 0
    assert (await repo.get_reminder(rid)).status == ReminderStatus.PENDING

    channel.fail_chats.clear()
    assert await dispatcher.tick() == 1
    assert (await repo.get_reminder(rid)).status == ReminderStatus.SENT
    assert await dispatcher.tick() == 0
    assert len(channel.sent) == 1


@pytest.mark.asyncio
async def test_one_failure_does_not_block_the_batch(repo, clock):
    good = await add_user(repo, 1)
    bad = await add_user(repo, 2)
    ok_id = await add_reminder(repo, good, trip_id=1)
    bad_id = await add_reminder(repo, bad, trip_id=2)
    channel = FakeChannel(fail_chats={2})

    assert await make_dispatcher(repo, channel, clock).tick() == 1
    assert (await repo.get_reminder(ok_id)).status == ReminderStatus.SENT
    assert (await repo.get_reminder(bad_id)).status == ReminderStatus.PENDING


@pytest.mark.asyncio
async def test_unknown_user_is_dropped(repo, clock):
    ghost = User(external_id=0, id=999)
    rid = await add_reminder(repo, ghost, trip_id=1)
    channel = FakeChannel()

    assert await make_dispatcher(repo, channel, clock).tick() == 0
    assert channel.sent == []
    assert (await repo.get_reminder(rid)).status == ReminderStatus.PENDING


@pytest.mark.asyncio
async def test_hung_delivery_times_out(repo, clock):
    slow = await add_user(repo, 1)
    fast = await add_user(repo, 2)
    slow_id = await add_reminder(repo, slow, trip_id=1)
    await add_reminder(repo, fast, trip_id=2)
    channel = FakeChannel(hang_chats={1})
    dispatcher = make_dispatcher(repo, channel, clock, delivery_timeout=0.05)

    sent = await asyncio.wait_for(dispatcher.tick(), timeout=2)

    assert sent == 1
    assert channel.in_flight == 0
    assert (await repo.get_reminder(slow_id)).status == ReminderStatus.PENDING


@pytest.mark.asyncio
async def test_mark_sent_failure_leaves_reminder_pending(repo, clock, monkeypatch):
    user = await add_user(repo, 42)
    rid = await add_reminder(repo, user, trip_id=1)
    channel = FakeChannel()

    async def broken(reminder_id):
        raise TransientError("Storage is unavailable.")

    monkeypatch.setattr(repo, "mark_reminder_sent", broken)
    assert await make_dispatcher(repo, channel, clock).tick() == 0
    assert len(channel.sent) == 1
    assert (await repo.get_reminder(rid)).status == ReminderStatus.PENDING


@pytest.mark.asyncio
async def test_unexpected_error_is_contained(repo, clock):
    class Exploding(FakeChannel):
        async def send_text(self, chat_id, text, keyboard=None, markdown=False):
            if chat_id == 1:
                raise RuntimeError("boom")
            return await super().send_text(chat_id, text, keyboard, markdown)

    await add_reminder(repo, await add_user(repo, 1), trip_id=1)
    await add_reminder(repo, await add_user(repo, 2), trip_id=2)
    channel = Exploding()

    assert await make_dispatcher(repo, channel, clock).tick() == 1
    assert channel.sent == [(2, "⏰ Train soon")]


@pytest.mark.asyncio
async def test_fan_out_respects_ceiling(repo, clock):
    for i in range(15):
        user = await add_user(repo, 100 + i)
        await add_reminder(repo, user, trip_id=i + 1)
    channel = FakeChannel(delay=0.05)

    sent = await make_dispatcher(repo, channel, clock, max_concurrent=10).tick()

    assert sent == 15
    assert channel.max_in_flight == 10
    assert await repo.get_pending_reminders(NOW) == []


@pytest.mark.asyncio
async def test_delivery_tasks_are_bounded_too(repo, clock):
    class Counting(FakeChannel):
        max_tasks = 0

        async def send_text(self, chat_id, text, keyboard=None, markdown=False):
            live = [t for t in asyncio.all_tasks() if t.get_name().startswith("deliver-")]
            self.max_tasks = max(self.max_tasks, len(live))
            return await super().send_text(chat_id, text, keyboard, markdown)

    for i in range(60):
        user = await add_user(repo, 100 + i)
        await add_reminder(repo, user, trip_id=i + 1)
    channel = Counting(delay=0.01)

    sent = await make_dispatcher(repo, channel, clock, max_concurrent=10).tick()

    assert sent == 60
    assert 0 < channel.max_tasks <= 10
    assert channel.max_in_flight == 10


@pytest.mark.asyncio
async def test_poller_delivers_then_stops(repo, clock):
    user = await add_user(repo, 42)
    rid = await add_reminder(repo, user, trip_id=1)
    channel = FakeChannel()
    dispatcher = make_dispatcher(repo, channel, clock)

    tasks = dispatcher.start(pollers=1)
    for _ in range(100):
        if channel.sent:
            break
        await asyncio.sleep(0.01)
    await asyncio.wait_for(dispatcher.stop(), timeout=1)

    assert all(t.done() for t in tasks)
    assert channel.sent == [(42, "⏰ Train soon")]
    assert (await repo.get_reminder(rid)).status == ReminderStatus.SENT


@pytest.mark.asyncio
async def test_stop_does_not_wait_for_the_interval(repo, clock):
    dispatcher = make_dispatcher(repo, FakeChannel(), clock, interval=3600)
    tasks = dispatcher.start(pollers=3)
    assert [t.get_name() for t in tasks] == [
        "reminder-poller-0", "reminder-poller-1", "reminder-poller-2"]

    await asyncio.sleep(0)
    await asyncio.wait_for(dispatcher.stop(), timeout=1)
    assert all(t.done() for t in tasks)


@pytest.mark.asyncio
async def test_reminder_becomes_due_as_time_passes(repo, clock):
    user = await add_user(repo, 42)
    await add_reminder(repo, user, trip_id=1, due=NOW + timedelta(minutes=10))
    channel = FakeChannel()
    dispatcher = make_dispatcher(repo, channel, clock)

    assert await dispatcher.tick() == 0
    clock.now = NOW + timedelta(minutes=10)
    assert await dispatcher.tick() == 1
