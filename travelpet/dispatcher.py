"""Reminder dispatch.

One or more pollers run in asyncio tasks until the shared stop event is
set.  Every tick a poller:
  1. Fetches every pending reminder whose trigger time has passed.
  2. Delivers them concurrently, at most max_concurrent at a time.
  3. Waits for the whole batch to finish before the next tick.

A reminder is marked sent only after a successful delivery; a failed or
timed-out delivery stays pending and is retried on the next tick.  This is
at-least-once: pollers do not claim reminders, so two pollers (or a failed
mark-sent after a good send) can deliver the same reminder twice.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable

from travelpet.channel import DeliveryChannel
from travelpet.domain import NotFoundError, Reminder, TravelPetError
from travelpet.repository import Repository

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 10
DEFAULT_CONCURRENCY = 10
DEFAULT_DELIVERY_TIMEOUT = 10


class ReminderDispatcher:

    def __init__(
        self,
        repo: Repository,
        channel: DeliveryChannel,
        clock: Callable[[], datetime],
        interval: float = DEFAULT_INTERVAL,
        max_concurrent: int = DEFAULT_CONCURRENCY,
        delivery_timeout: float = DEFAULT_DELIVERY_TIMEOUT,
    ) -> None:
        self.repo = repo
        self.channel = channel
        self.clock = clock
        self.interval = interval
        self.max_concurrent = max_concurrent
        self.delivery_timeout = delivery_timeout
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    # ── lifecycle ──

    def start(self, pollers: int = 1) -> list[asyncio.Task]:
        """Spawn *pollers* independent tick loops."""
        self._stop.clear()
        logger.info("Starting %d reminder poller(s).", pollers)
        for idx in range(pollers):
            self._tasks.append(asyncio.create_task(self.run(idx), name=f"reminder-poller-{idx}"))
        return list(self._tasks)

    async def stop(self) -> None:
        """Signal every poller and wait for in-flight batches to finish."""
        self._stop.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def run(self, idx: int = 0) -> None:
        logger.info("Poller #%d started.", idx)
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.tick()
            except Exception as e:
                logger.error("Poller #%d tick error: %s", idx, e)
        logger.info("Poller #%d exited.", idx)

    # ── one tick ──

    async def tick(self) -> int:
        """Fetch due reminders and deliver the batch.  Returns how many were sent."""
        pending = await self.repo.get_pending_reminders(self.clock())
        if not pending:
            logger.debug("No pending reminders.")
            return 0

        logger.info("Found %d pending reminder(s).", len(pending))
        slots = asyncio.Semaphore(self.max_concurrent)

        async def guarded(reminder: Reminder) -> bool:
            try:
                return await self.handle(reminder)
            finally:
                slots.release()

        # A slot is taken before the task exists, so at most max_concurrent
        # delivery tasks are alive at any time.
        tasks: list[asyncio.Task] = []
        for reminder in pending:
            await slots.acquire()
            tasks.append(asyncio.create_task(guarded(reminder), name=f"deliver-{reminder.id}"))

        # Every delivery settles before the next fetch
        results = await asyncio.gather(*tasks, return_exceptions=True)
        sent = 0
        for reminder, result in zip(pending, results):
            if isinstance(result, BaseException):
                logger.error("Reminder %d: unexpected error: %s", reminder.id, result)
            elif result:
                sent += 1
        logger.info("Batch done: %d/%d delivered.", sent, len(pending))
        return sent

    async def handle(self, reminder: Reminder) -> bool:
        """Deliver one reminder.  True only if it was delivered and marked sent."""
        try:
            user = await self.repo.get_user_by_id(reminder.user_id)
        except NotFoundError:
            logger.error("Reminder %d: user %d not found, dropped.",
                         reminder.id, reminder.user_id)
            return False

        try:
            await asyncio.wait_for(
                self.channel.send_text(user.delivery_chat, reminder.message),
                timeout=self.delivery_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Reminder %d: delivery timed out, will retry.", reminder.id)
            return False
        except TravelPetError as e:
            logger.warning("Reminder %d: delivery failed (%s), will retry.", reminder.id, e)
            return False

        try:
            await self.repo.mark_reminder_sent(reminder.id)
        except TravelPetError as e:
            logger.error("Reminder %d delivered but not marked sent: %s", reminder.id, e)
            return False
        logger.info("Reminder %d delivered to chat %d.", reminder.id, user.delivery_chat)
        return True
