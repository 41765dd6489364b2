"""Telegram transport.

Thin handlers: each one locks the user's session, hands the input to the
ConversationController and delivers the Reply it gets back.  The reminder
dispatcher and the session reaper run as background tasks for the lifetime
of the Application.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any

from telegram import Update
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from travelpet.channel import DeliveryChannel, TelegramChannel
from travelpet.commands import MalformedCommand, decode
from travelpet.config import BASE_DIR, make_clock
from travelpet.controller import ConversationController
from travelpet.dispatcher import ReminderDispatcher
from travelpet.domain import DeliveryError
from travelpet.render import Reply
from travelpet.repository import JsonRepository
from travelpet.schedule import ScheduleQuery, YandexScheduleClient
from travelpet.sessions import SessionManager
from travelpet.trips import TripService

logger = logging.getLogger(__name__)

REAPER_INTERVAL_SECONDS = 60


async def deliver(channel: DeliveryChannel, chat_id: int, reply: Reply,
                  message_id: int | None = None) -> None:
    """Send (or edit, when asked and possible) the message part of a Reply."""
    if reply.text is None:
        return
    try:
        if reply.edit:
            await channel.edit_or_send(chat_id, message_id, reply.text,
                                       reply.keyboard, reply.markdown)
        else:
            await channel.send_text(chat_id, reply.text, reply.keyboard, reply.markdown)
    except DeliveryError as e:
        logger.warning("Reply to chat %d not delivered: %s", chat_id, e)


def _profile(update: Update) -> tuple[int, str, str]:
    user = update.effective_user
    return user.id, user.first_name or "", user.username or ""

# ────────────────────────────────────────────────────────────────────────────
# Commands
# ────────────────────────────────────────────────────────────────────────────


async def cmd_start(update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
    """Register the user and show the welcome text."""
    data = ctx.application.bot_data
    chat_id = update.effective_chat.id
    uid, name, username = _profile(update)
    reply = await data["controller"].welcome(uid, name, username, chat_id)
    await deliver(data["channel"], chat_id, reply)
    logger.info("/start for %d.", uid)


async def cmd_help(update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
    data = ctx.application.bot_data
    await deliver(data["channel"], update.effective_chat.id, data["controller"].help())


async def cmd_newtrip(update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
    data = ctx.application.bot_data
    chat_id = update.effective_chat.id
    uid, name, username = _profile(update)
    async with data["sessions"].session(uid) as session:
        reply = await data["controller"].start_session(session, name, username, chat_id)
        await deliver(data["channel"], chat_id, reply)


async def cmd_mytrips(update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
    data = ctx.application.bot_data
    chat_id = update.effective_chat.id
    reply = await data["controller"].my_trips(update.effective_user.id)
    await deliver(data["channel"], chat_id, reply)


async def cmd_cancel(update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
    data = ctx.application.bot_data
    chat_id = update.effective_chat.id
    async with data["sessions"].session(update.effective_user.id) as session:
        reply = await data["controller"].cancel_session(session)
        await deliver(data["channel"], chat_id, reply)

# ────────────────────────────────────────────────────────────────────────────
# Free text and buttons
# ────────────────────────────────────────────────────────────────────────────


async def on_text(update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not update.message.text:
        return
    data = ctx.application.bot_data
    chat_id = update.effective_chat.id
    async with data["sessions"].session(update.effective_user.id) as session:
        reply = await data["controller"].handle_text(session, update.message.text)
        await deliver(data["channel"], chat_id, reply)


async def on_callback(update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if not query:
        return
    try:
        command = decode(query.data or "")
    except MalformedCommand as e:
        await query.answer(str(e), show_alert=True)
        return

    data = ctx.application.bot_data
    msg = query.message
    chat_id = msg.chat.id if msg else query.from_user.id
    message_id = msg.message_id if msg else None

    async with data["sessions"].session(query.from_user.id) as session:
        reply = await data["controller"].handle_command(session, command)
        await deliver(data["channel"], chat_id, reply, message_id)
    await query.answer(reply.notice, show_alert=reply.alert)


async def on_error(update: object, ctx: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error("Update %s caused error: %s", update, ctx.error, exc_info=ctx.error)

# ────────────────────────────────────────────────────────────────────────────
# Application lifecycle
# ────────────────────────────────────────────────────────────────────────────


async def post_init(app: Application) -> None:
    """Called once after the bot connects.  Starts the background tasks."""
    data = app.bot_data
    cfg = data["global_config"]
    data["channel"] = TelegramChannel(app.bot)

    dispatcher = ReminderDispatcher(
        data["repo"], data["channel"], data["clock"],
        interval=cfg["polling_interval_seconds"],
        max_concurrent=cfg["max_concurrent_deliveries"],
        delivery_timeout=cfg["delivery_timeout_seconds"],
    )
    dispatcher.start(cfg["pollers"])
    data["dispatcher"] = dispatcher

    stop = asyncio.Event()
    data["reaper_stop"] = stop
    data["reaper_task"] = asyncio.create_task(
        data["sessions"].reaper_loop(stop, REAPER_INTERVAL_SECONDS))


async def post_shutdown(app: Application) -> None:
    """Called on graceful shutdown.  Lets in-flight deliveries finish."""
    data = app.bot_data
    dispatcher: ReminderDispatcher | None = data.get("dispatcher")
    if dispatcher:
        await dispatcher.stop()
    stop: asyncio.Event | None = data.get("reaper_stop")
    task: asyncio.Task | None = data.get("reaper_task")
    if stop and task:
        stop.set()
        await task
    logger.info("Bot stopped.")


def build_application(token: str, cfg: dict[str, Any], yandex_api_key: str) -> Application:
    clock = make_clock(cfg["timezone"])
    repo = JsonRepository(BASE_DIR / cfg["data_dir"] / "store.json")
    ttl = cfg["session_ttl_minutes"]

    provider = YandexScheduleClient(yandex_api_key, cfg["schedule_base_url"])
    controller = ConversationController(TripService(repo), ScheduleQuery(provider), clock)
    sessions = SessionManager(clock, timedelta(minutes=ttl) if ttl else None)

    app = (
        Application.builder()
        .token(token)
        .concurrent_updates(True)  # sessions are locked per user
        .post_init(post_init)
        .post_shutdown(post_shutdown)
        .build()
    )
    app.bot_data.update({
        "global_config": cfg,
        "clock": clock,
        "repo": repo,
        "controller": controller,
        "sessions": sessions,
    })

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("newtrip", cmd_newtrip))
    app.add_handler(CommandHandler("mytrips", cmd_mytrips))
    app.add_handler(CommandHandler("cancel", cmd_cancel))
    app.add_handler(CallbackQueryHandler(on_callback))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, on_text))
    app.add_error_handler(on_error)
    return app
