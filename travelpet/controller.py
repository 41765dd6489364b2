"""Conversation controller: the /newtrip booking wizard as a state machine.

    NONE → SELECTING_FROM → SELECTING_TO → SHOWING_SCHEDULE → CONFIRMED
                 ↓               ↓
            WAITING_FROM → WAITING_TO ──────↗   (manual text entry)

Any state can go to CANCELLED.  Each forward step pushes onto the session's
state history and Back pops exactly one entry, then redraws the screen of
the new top state.

Every entry point takes the caller's Session (already locked by the
SessionManager) and returns a Reply.  User mistakes never raise: they come
back either as a recoverable screen with retry/cancel buttons, or as an
inline popup that leaves the session untouched.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Awaitable, Callable

from travelpet import stations
from travelpet.commands import (
    Back,
    Cancel,
    ChangePage,
    Command,
    EditFrom,
    EditTo,
    ManualEntry,
    Noop,
    Retry,
    SelectStation,
    SelectTrain,
)
from travelpet.domain import (
    NotFoundError,
    TransientError,
    TravelPetError,
    Trip,
    ValidationError,
)
from travelpet.render import (
    CANCELLED_TEXT,
    HELP_TEXT,
    IDLE_HINT,
    WELCOME_TEXT,
    Button,
    Reply,
    format_confirmation,
    format_schedule,
    format_trips,
    inline_error,
    train_button_label,
)
from travelpet.schedule import ScheduleQuery
from travelpet.sessions import (
    ConversationState as S,
    Session,
    page_exists,
    paginate,
)
from travelpet.trips import TripService

logger = logging.getLogger(__name__)

MAX_RECENT_SHOWN = 3
MAX_POPULAR_SHOWN = 7

EXPIRED_TEXT = "This planning session has expired. Start again with /newtrip."
WRONG_STEP_TEXT = "This button belongs to an earlier step."

_CANCEL_BTN = Button("❌ Cancel", Cancel())
_BACK_BTN = Button("◀️ Back", Back())


class ConversationController:

    def __init__(
        self,
        trips: TripService,
        schedules: ScheduleQuery,
        clock: Callable[[], datetime],
    ) -> None:
        self.trips = trips
        self.schedules = schedules
        self.clock = clock
        self._handlers: dict[type, Callable[[Session, Command], Awaitable[Reply]]] = {
            Back: self._on_back,
            SelectStation: self._on_select_station,
            SelectTrain: self._on_select_train,
            ChangePage: self._on_change_page,
            EditFrom: self._on_edit_from,
            EditTo: self._on_edit_to,
            ManualEntry: self._on_manual_entry,
            Retry: self._on_retry,
        }

    # ────────────────────────────────────────────────────────────────────
    # Entry points
    # ────────────────────────────────────────────────────────────────────

    async def welcome(self, external_id: int, name: str = "", username: str = "",
                      chat_id: int | None = None) -> Reply:
        """/start: register the user and greet them."""
        try:
            await self.trips.ensure_user(external_id, name, username, chat_id)
        except TravelPetError as e:
            return Reply(text=f"⚠️ {e}")
        return Reply(text=WELCOME_TEXT, markdown=True)

    def help(self) -> Reply:
        return Reply(text=HELP_TEXT, markdown=True)

    async def my_trips(self, external_id: int) -> Reply:
        try:
            trips = await self.trips.trips_of(external_id)
        except TravelPetError as e:
            return Reply(text=f"⚠️ {e}")
        return Reply(text=format_trips(trips), markdown=True)

    async def start_session(self, session: Session, name: str = "", username: str = "",
                            chat_id: int | None = None) -> Reply:
        """/newtrip: reset the session and ask for the departure station."""
        try:
            await self.trips.ensure_user(session.user_id, name, username, chat_id)
        except TravelPetError as e:
            # Registration is retried at confirmation time
            logger.warning("Could not register user %d: %s", session.user_id, e)
        session.reset(self.clock())
        return self._station_screen(session)

    async def cancel_session(self, session: Session, edit: bool = False) -> Reply:
        session.transition(S.CANCELLED)
        return Reply(text=CANCELLED_TEXT, markdown=True, edit=edit,
                     notice="Cancelled" if edit else None)

    async def handle_text(self, session: Session, text: str) -> Reply:
        text = text.strip()
        if text in ("/cancel", "/cancel_"):
            return await self.cancel_session(session)
        if session.state == S.WAITING_FROM:
            return await self._on_typed_station(session, text, to_side=False)
        if session.state == S.WAITING_TO:
            return await self._on_typed_station(session, text, to_side=True)
        return Reply(text=IDLE_HINT)

    async def handle_command(self, session: Session, command: Command) -> Reply:
        if isinstance(command, Noop):
            return Reply()
        if isinstance(command, Cancel):
            return await self.cancel_session(session, edit=True)
        if session.state == S.NONE:
            return inline_error(EXPIRED_TEXT)
        handler = self._handlers[type(command)]
        try:
            return await handler(session, command)
        except TravelPetError as e:
            return inline_error(str(e))

    # ────────────────────────────────────────────────────────────────────
    # Command handlers
    # ────────────────────────────────────────────────────────────────────

    async def _on_back(self, session: Session, command: Back) -> Reply:
        state = session.back()
        if state is None:
            return Reply(notice="No previous step")
        return self._redraw(session, edit=True)

    async def _on_select_station(self, session: Session, command: SelectStation) -> Reply:
        if session.state not in (S.SELECTING_FROM, S.SELECTING_TO):
            raise ValidationError(WRONG_STEP_TEXT)

        if command.recent:
            if command.index >= len(session.recent_stations):
                raise NotFoundError("Station not found.")
            station = session.recent_stations[command.index]
        else:
            station = stations.by_index(command.index)
            if station is None:
                raise NotFoundError("Station not found.")

        if session.state == S.SELECTING_TO and station.code == session.from_code:
            raise ValidationError("Destination must differ from the departure station.")

        session.remember_station(station)

        if session.state == S.SELECTING_FROM:
            session.from_code, session.from_name = station.code, station.name
            session.transition(S.SELECTING_TO)
            reply = self._station_screen(session, edit=True)
            reply.notice = f"✓ {station.name}"
            return reply

        session.to_code, session.to_name = station.code, station.name
        return await self._search(session, edit=True)

    async def _on_select_train(self, session: Session, command: SelectTrain) -> Reply:
        if session.state != S.SHOWING_SCHEDULE:
            raise ValidationError(WRONG_STEP_TEXT)
        if not 0 <= command.index < len(session.schedule_results):
            raise NotFoundError("This train is no longer in the schedule.")
        option = session.schedule_results[command.index]

        user = await self.trips.resolve_user(session.user_id)
        trip = Trip(
            user_id=user.id,
            from_code=session.from_code,
            to_code=session.to_code,
            departure_time=option.departure_time,
        )
        await self.trips.confirm_trip(trip, session.from_label)

        session.transition(S.CONFIRMED)
        logger.info("User %d booked train %s at %s.",
                    session.user_id, option.train_id, option.departure_time.isoformat())
        return Reply(
            text=format_confirmation(option, session.from_label, session.to_label),
            markdown=True, edit=True, notice="Trip booked!",
        )

    async def _on_change_page(self, session: Session, command: ChangePage) -> Reply:
        if session.state != S.SHOWING_SCHEDULE:
            raise ValidationError(WRONG_STEP_TEXT)
        if not page_exists(len(session.schedule_results), command.page):
            raise NotFoundError("Page not found.")
        session.schedule_page = command.page
        return self._schedule_screen(session, edit=True)

    async def _on_edit_from(self, session: Session, command: EditFrom) -> Reply:
        session.transition(S.SELECTING_FROM)
        return self._station_screen(session, edit=True)

    async def _on_edit_to(self, session: Session, command: EditTo) -> Reply:
        if not session.from_code:
            raise ValidationError("Choose the departure station first.")
        session.transition(S.SELECTING_TO)
        return self._station_screen(session, edit=True)

    async def _on_manual_entry(self, session: Session, command: ManualEntry) -> Reply:
        if session.state == S.SELECTING_FROM:
            session.transition(S.WAITING_FROM)
        elif session.state == S.SELECTING_TO:
            session.transition(S.WAITING_TO)
        else:
            raise ValidationError(WRONG_STEP_TEXT)
        return self._manual_prompt(session, edit=True)

    async def _on_retry(self, session: Session, command: Retry) -> Reply:
        if session.state not in (S.SELECTING_TO, S.WAITING_TO):
            raise ValidationError(WRONG_STEP_TEXT)
        if not session.from_code or not session.to_code:
            raise ValidationError("Choose both stations first.")
        return await self._search(session, edit=True)

    async def _on_typed_station(self, session: Session, text: str, to_side: bool) -> Reply:
        station = stations.resolve(text)
        if station is None:
            return Reply(
                text=(f"⚠️ Station “{text}” not found.\n\n"
                      "Type a station name or code, e.g. Таганрог or s9613483"),
                keyboard=[[_BACK_BTN, _CANCEL_BTN]],
            )
        if to_side and station.code == session.from_code:
            return Reply(text="⚠️ Destination must differ from the departure station.",
                         keyboard=[[_BACK_BTN, _CANCEL_BTN]])

        session.remember_station(station)
        if not to_side:
            session.from_code, session.from_name = station.code, station.name
            session.transition(S.WAITING_TO)
            return self._manual_prompt(session)

        session.to_code, session.to_name = station.code, station.name
        return await self._search(session)

    # ────────────────────────────────────────────────────────────────────
    # Schedule query
    # ────────────────────────────────────────────────────────────────────

    async def _search(self, session: Session, edit: bool = False) -> Reply:
        """Query the schedule; advance to SHOWING_SCHEDULE only on success."""
        try:
            result = await self.schedules.search(
                session.from_code, session.to_code, session.date)
        except TransientError as e:
            logger.warning("Search %s → %s for %d failed: %s",
                           session.from_code, session.to_code, session.user_id, e)
            return self._recoverable(str(e), edit)

        if not result.options:
            return self._recoverable("No trains found for this route.", edit)

        session.schedule_results = result.options
        session.schedule_date = result.date
        session.schedule_page = 0
        session.transition(S.SHOWING_SCHEDULE)
        return self._schedule_screen(session, edit)

    # ────────────────────────────────────────────────────────────────────
    # Screens
    # ────────────────────────────────────────────────────────────────────

    def _redraw(self, session: Session, edit: bool) -> Reply:
        if session.state in (S.SELECTING_FROM, S.SELECTING_TO):
            return self._station_screen(session, edit)
        if session.state in (S.WAITING_FROM, S.WAITING_TO):
            return self._manual_prompt(session, edit)
        if session.state == S.SHOWING_SCHEDULE:
            return self._schedule_screen(session, edit)
        return Reply(text=IDLE_HINT, edit=edit)

    def _nav_row(self, session: Session) -> list[Button]:
        if len(session.state_history) >= 2:
            return [_BACK_BTN, _CANCEL_BTN]
        return [_CANCEL_BTN]

    def _station_screen(self, session: Session, edit: bool = False) -> Reply:
        to_side = session.state == S.SELECTING_TO
        if to_side:
            text = (f"✅ From: {session.from_label}\n\n"
                    "📍 Choose the destination station\n\nPick a recent or popular one:")
        else:
            text = "📍 Choose the departure station\n\nPick a recent or popular one:"

        rows: list[list[Button]] = []
        for i, station in enumerate(session.recent_stations[:MAX_RECENT_SHOWN]):
            rows.append([Button(f"🕒 {station.name}", SelectStation(recent=True, index=i))])
        for i, station in enumerate(stations.popular(MAX_POPULAR_SHOWN)):
            rows.append([Button(f"📍 {station.name}", SelectStation(recent=False, index=i))])
        rows.append([Button("⌨️ Type a name", ManualEntry())])
        rows.append(self._nav_row(session))
        return Reply(text=text, keyboard=rows, edit=edit)

    def _manual_prompt(self, session: Session, edit: bool = False) -> Reply:
        if session.state == S.WAITING_TO:
            text = (f"✅ From: {session.from_label}\n\n"
                    "⌨️ Type the destination station name or code\n\n"
                    "For example: Ростов-Главный or s9612913")
        else:
            text = ("⌨️ Type the departure station name or code\n\n"
                    "For example: Таганрог or s9613483")
        return Reply(text=text, keyboard=[self._nav_row(session)], edit=edit)

    def _schedule_screen(self, session: Session, edit: bool = False) -> Reply:
        page = paginate(session.schedule_results, session.schedule_page)
        text = format_schedule(page, session.from_label, session.to_label,
                               session.schedule_date or session.date)

        rows: list[list[Button]] = [
            [Button(train_button_label(opt), SelectTrain(page.start + offset))]
            for offset, opt in enumerate(page.items)
        ]
        if page.total > 1:
            nav: list[Button] = []
            if page.has_prev:
                nav.append(Button("◀️", ChangePage(page.index - 1)))
            nav.append(Button(f"{page.index + 1}/{page.total}", Noop()))
            if page.has_next:
                nav.append(Button("▶️", ChangePage(page.index + 1)))
            rows.append(nav)
        rows.append([Button("✏️ Other departure", EditFrom()),
                     Button("✏️ Other destination", EditTo())])
        rows.append([_BACK_BTN, _CANCEL_BTN])
        return Reply(text=text, keyboard=rows, edit=edit)

    def _recoverable(self, message: str, edit: bool = False) -> Reply:
        return Reply(
            text=f"⚠️ {message}\n\nWhat next?",
            keyboard=[
                [Button("🔄 Try again", Retry())],
                [Button("✏️ Other departure", EditFrom()),
                 Button("✏️ Other destination", EditTo())],
                [_CANCEL_BTN],
            ],
            edit=edit,
        )
