"""Message delivery channel.

Both the conversation transport and the reminder dispatcher send through
one shared channel.  TelegramChannel serializes calls with a single lock
held only for the duration of one Bot API call.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.error import BadRequest, TelegramError

from travelpet.domain import DeliveryError
from travelpet.render import Button

logger = logging.getLogger(__name__)

Keyboard = list[list[Button]]


class DeliveryChannel(ABC):

    @abstractmethod
    async def send_text(self, chat_id: int, text: str,
                        keyboard: Keyboard | None = None, markdown: bool = False) -> int:
        """Send a message and return its ID.  DeliveryError on failure."""

    @abstractmethod
    async def edit_text(self, chat_id: int, message_id: int, text: str,
                        keyboard: Keyboard | None = None, markdown: bool = False) -> None:
        """Replace an existing message.  DeliveryError on failure."""

    async def edit_or_send(self, chat_id: int, message_id: int | None, text: str,
                           keyboard: Keyboard | None = None, markdown: bool = False) -> int:
        """Edit in place where possible, otherwise send a new message."""
        if message_id is not None:
            try:
                await self.edit_text(chat_id, message_id, text, keyboard, markdown)
                return message_id
            except DeliveryError as e:
                logger.info("Edit of %d in chat %d failed (%s), sending instead.",
                            message_id, chat_id, e)
        return await self.send_text(chat_id, text, keyboard, markdown)


def to_markup(keyboard: Keyboard | None) -> InlineKeyboardMarkup | None:
    if not keyboard:
        return None
    return InlineKeyboardMarkup([
        [InlineKeyboardButton(b.text, callback_data=b.data) for b in row]
        for row in keyboard
    ])


class TelegramChannel(DeliveryChannel):

    def __init__(self, bot: Bot) -> None:
        self.bot = bot
        self._lock = asyncio.Lock()

    async def send_text(self, chat_id: int, text: str,
                        keyboard: Keyboard | None = None, markdown: bool = False) -> int:
        try:
            async with self._lock:
                msg = await self.bot.send_message(
                    chat_id=chat_id, text=text,
                    parse_mode="Markdown" if markdown else None,
                    reply_markup=to_markup(keyboard),
                )
        except TelegramError as e:
            raise DeliveryError(f"send to {chat_id} failed: {e}") from e
        return msg.message_id

    async def edit_text(self, chat_id: int, message_id: int, text: str,
                        keyboard: Keyboard | None = None, markdown: bool = False) -> None:
        try:
            async with self._lock:
                await self.bot.edit_message_text(
                    chat_id=chat_id, message_id=message_id, text=text,
                    parse_mode="Markdown" if markdown else None,
                    reply_markup=to_markup(keyboard),
                )
        except BadRequest as e:
            if "not modified" in str(e).lower():
                return
            raise DeliveryError(f"edit of {message_id} failed: {e}") from e
        except TelegramError as e:
            raise DeliveryError(f"edit of {message_id} failed: {e}") from e
