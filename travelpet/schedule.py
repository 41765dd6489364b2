"""Schedule lookup.

All HTTP calls go through httpx.AsyncClient and talk to the Yandex.Rasp v3
search API.  ScheduleQuery sits on top of any provider and applies the
business policy: drop departures in the past, and when nothing is left try
the next calendar day once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

import httpx

from travelpet.config import DEFAULT_SCHEDULE_URL
from travelpet.domain import ScheduleOption, TransientError
from travelpet.stations import normalize_code

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10


class ScheduleProvider(Protocol):
    async def get_options(
        self, from_code: str, to_code: str, date: datetime,
    ) -> list[ScheduleOption]:
        ...


# ────────────────────────────────────────────────────────────────────────────
# Yandex.Rasp client
# ────────────────────────────────────────────────────────────────────────────


def parse_segments(payload: dict) -> list[ScheduleOption]:
    """Turn a search response body into schedule options.

    Segments missing a departure or arrival timestamp are skipped.
    """
    out: list[ScheduleOption] = []
    for seg in payload.get("segments") or []:
        dep = seg.get("departure")
        arr = seg.get("arrival")
        if not dep or not arr:
            continue
        thread = seg.get("thread") or {}
        out.append(ScheduleOption(
            train_id=thread.get("number", "?"),
            title=thread.get("title", ""),
            departure_time=datetime.fromisoformat(dep),
            arrival_time=datetime.fromisoformat(arr),
            duration=float(seg.get("duration") or 0),
        ))
    return out


class YandexScheduleClient:
    """Suburban train schedule between two stations for one day."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_SCHEDULE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self._transport = transport

    async def get_options(
        self, from_code: str, to_code: str, date: datetime,
    ) -> list[ScheduleOption]:
        params = {
            "apikey": self.api_key,
            "format": "json",
            "transport_types": "suburban",
            "from": normalize_code(from_code),
            "to": normalize_code(to_code),
            "lang": "ru_RU",
            "page": 1,
            "date": date.strftime("%Y-%m-%d"),
        }
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                r = await client.get(self.base_url, params=params, timeout=REQUEST_TIMEOUT)
        except httpx.HTTPError as e:
            logger.warning("Schedule %s → %s: %s", from_code, to_code, e)
            raise TransientError("The schedule service is unreachable right now.") from e

        if r.status_code != 200:
            logger.warning("Schedule %s → %s: HTTP %d", from_code, to_code, r.status_code)
            raise TransientError(f"The schedule service answered with status {r.status_code}.")

        try:
            return parse_segments(r.json())
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("Schedule %s → %s: bad payload: %s", from_code, to_code, e)
            raise TransientError("The schedule service sent an unreadable answer.") from e


# ────────────────────────────────────────────────────────────────────────────
# Query policy
# ────────────────────────────────────────────────────────────────────────────


@dataclass
class SearchResult:
    options: list[ScheduleOption]
    date: datetime  # the date actually searched; moves to the next midnight on retry


def filter_departed(options: list[ScheduleOption], since: datetime) -> list[ScheduleOption]:
    return [o for o in options if o.departure_time >= since]


def next_midnight(date: datetime) -> datetime:
    day = date.replace(hour=0, minute=0, second=0, microsecond=0)
    return day + timedelta(days=1)


class ScheduleQuery:

    def __init__(self, provider: ScheduleProvider) -> None:
        self.provider = provider

    async def search(self, from_code: str, to_code: str, date: datetime) -> SearchResult:
        """Every option departing at or after *date*, or failing that, tomorrow's.

        Results are never capped; pagination is a presentation concern.
        Provider failures surface as TransientError.
        """
        options = filter_departed(
            await self.provider.get_options(from_code, to_code, date), date,
        )
        if options:
            return SearchResult(options, date)

        tomorrow = next_midnight(date)
        logger.info("No trains %s → %s left on %s, trying %s.",
                    from_code, to_code, date.date(), tomorrow.date())
        options = filter_departed(
            await self.provider.get_options(from_code, to_code, tomorrow), tomorrow,
        )
        return SearchResult(options, tomorrow)
