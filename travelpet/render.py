"""Rendering directives and message formatting.

The controller answers every input with a Reply; the transport layer turns
it into Telegram calls.  Plain text is used wherever provider data (train
titles) is shown, Markdown (V1) only for fixed texts.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from travelpet.commands import Command, encode
from travelpet.domain import ScheduleOption, Trip
from travelpet.sessions import Page
from travelpet.stations import display_name


@dataclass(frozen=True)
class Button:
    text: str
    command: Command

    @property
    def data(self) -> str:
        return encode(self.command)


@dataclass
class Reply:
    """What the transport should do in answer to one user input.

    text      – message body; None means nothing is sent besides the notice
    keyboard  – inline button rows
    edit      – edit the message the button was pressed on instead of sending
    notice    – short answer to a button press (toast, or popup when alert)
    """

    text: str | None = None
    keyboard: list[list[Button]] | None = None
    edit: bool = False
    notice: str | None = None
    alert: bool = False
    markdown: bool = False


def inline_error(message: str) -> Reply:
    """Answer a button press with a popup, leaving the chat untouched."""
    return Reply(notice=message, alert=True)


def esc(t: str) -> str:
    """Escape Markdown V1 special characters in user/API-provided text."""
    return t.replace("_", "\\_").replace("*", "\\*").replace("[", "\\[").replace("`", "\\`")


def clean_title(t: str) -> str:
    return t.replace("\\", "").replace("*", "")


def human_duration(seconds: float) -> str:
    sec = int(seconds)
    if sec < 60:
        return f"{sec} sec"
    mins = sec // 60
    if mins < 60:
        return f"{mins} min"
    h, m = divmod(mins, 60)
    if m == 0:
        return f"{h}h ({mins} min)"
    return f"{h}h {m}m ({mins} min)"


def _hm(t: datetime) -> str:
    return t.strftime("%H:%M")


def _dmy_hm(t: datetime) -> str:
    return t.strftime("%d.%m.%Y %H:%M")


def train_button_label(opt: ScheduleOption) -> str:
    return (f"🚆 {opt.train_id} | {_hm(opt.departure_time)} → "
            f"{_hm(opt.arrival_time)} ({human_duration(opt.duration)})")


def format_schedule(page: Page, from_label: str, to_label: str, date: datetime) -> str:
    """Schedule screen for one page.  Items are numbered across all pages."""
    parts = [
        "🚆 Trains",
        "",
        f"📍 {from_label} → {to_label}",
        f"📅 {date.strftime('%d.%m.%Y')}",
        "",
        "Pick a train:",
        "",
    ]
    for offset, opt in enumerate(page.items):
        parts.append(f"{page.start + offset + 1}. {clean_title(opt.title)}")
        parts.append(f"   🚆 Train: {opt.train_id}")
        parts.append(f"   🕒 {_dmy_hm(opt.departure_time)} → {_hm(opt.arrival_time)}")
        parts.append(f"   ⏱ {human_duration(opt.duration)}")
        parts.append("")
    return "\n".join(parts).rstrip() + "\n"


def format_confirmation(opt: ScheduleOption, from_label: str, to_label: str) -> str:
    return (
        "✅ *Trip booked!*\n\n"
        f"🚆 Train: *{esc(opt.train_id)}*\n"
        f"📍 Route: *{esc(from_label)}* → *{esc(to_label)}*\n"
        f"🕒 Departure: *{_dmy_hm(opt.departure_time)}*\n\n"
        "I'll remind you 30 minutes before departure. Have a nice trip! 🚂"
    )


def format_trips(trips: list[Trip]) -> str:
    if not trips:
        return (
            "📋 *My trips*\n\n"
            "No trips planned yet.\n\n"
            "Create one with /newtrip"
        )
    parts = ["📋 *My trips*", ""]
    for i, trip in enumerate(trips, start=1):
        dep = _dmy_hm(trip.departure_time) if trip.departure_time else "?"
        parts.append(f"*{i}.* 🚆 Trip #{trip.id}")
        parts.append(f"   📍 {esc(display_name(trip.from_code))} → {esc(display_name(trip.to_code))}")
        parts.append(f"   🕒 {dep}")
        parts.append("")
    return "\n".join(parts).rstrip()


WELCOME_TEXT = (
    "👋 *Welcome to TravelPet!*\n\n"
    "I help you plan commuter train trips and remind you before departure.\n\n"
    "*Commands*\n"
    "• /newtrip — plan a new trip\n"
    "• /mytrips — your planned trips\n"
    "• /help — how it works\n\n"
    "Ready? Send /newtrip"
)

HELP_TEXT = (
    "📖 *Help*\n\n"
    "/newtrip — plan a new trip, step by step\n"
    "/mytrips — list your planned trips\n"
    "/cancel — abort the trip you are planning\n"
    "/help — show this message\n\n"
    "*Planning a trip*\n"
    "1. Send /newtrip\n"
    "2. Pick the departure station (or type its name or code, e.g. s9613483)\n"
    "3. Pick the destination station\n"
    "4. Choose a train from the schedule\n"
    "5. Done! I'll remind you 30 minutes before departure"
)

CANCELLED_TEXT = "❌ *Trip planning cancelled*\n\nStart again with /newtrip"

IDLE_HINT = "To plan a trip send /newtrip\nFor help: /help"
