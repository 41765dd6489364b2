from datetime import datetime, timedelta

import httpx
import pytest

from conftest import MSK, NOW, ROSTOV, TAGANROG, FakeProvider, make_options
from travelpet.domain import TransientError
from travelpet.schedule import ScheduleQuery, YandexScheduleClient, next_midnight

TOMORROW = datetime(2026, 1, 24, 0, 0, tzinfo=MSK)


@pytest.mark.asyncio
async def test_past_departures_are_dropped():
    past = make_options(3, first=NOW - timedelta(hours=3))
    future = make_options(8, first=NOW)
    provider = FakeProvider({NOW.date(): past + future})

    result = await ScheduleQuery(provider).search(TAGANROG, ROSTOV, NOW)

    assert result.options == future  # departing exactly at NOW is kept, nothing capped
    assert result.date == NOW
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_empty_day_retries_next_midnight_once():
    provider = FakeProvider({
        NOW.date(): make_options(2, first=NOW - timedelta(hours=2)),
        TOMORROW.date(): make_options(4, first=TOMORROW + timedelta(hours=5)),
    })

    result = await ScheduleQuery(provider).search(TAGANROG, ROSTOV, NOW)

    assert [c[2] for c in provider.calls] == [NOW, TOMORROW]
    assert result.date == TOMORROW
    assert len(result.options) == 4


@pytest.mark.asyncio
async def test_no_third_attempt():
    provider = FakeProvider()
    result = await ScheduleQuery(provider).search(TAGANROG, ROSTOV, NOW)
    assert result.options == []
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_provider_failure_propagates():
    provider = FakeProvider(error=TransientError("down"))
    with pytest.raises(TransientError):
        await ScheduleQuery(provider).search(TAGANROG, ROSTOV, NOW)


def test_next_midnight_keeps_timezone():
    assert next_midnight(NOW) == TOMORROW
    assert next_midnight(NOW).tzinfo == MSK


# ── Yandex client over a mocked transport ──

SEGMENTS = {
    "segments": [
        {
            "departure": "2026-01-23T14:05:00+03:00",
            "arrival": "2026-01-23T15:35:00+03:00",
            "duration": 5400.0,
            "thread": {"number": "6012", "title": "Таганрог — Ростов-Главный"},
        },
        {"departure": None, "arrival": None, "thread": {}},
    ],
}


@pytest.mark.asyncio
async def test_client_builds_request_and_parses_segments():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(request.url.params)
        return httpx.Response(200, json=SEGMENTS)

    client = YandexScheduleClient("key", transport=httpx.MockTransport(handler))
    options = await client.get_options("9613483", "s9612913", NOW)

    assert seen["from"] == "s9613483"
    assert seen["to"] == "s9612913"
    assert seen["date"] == "2026-01-23"
    assert seen["apikey"] == "key"
    assert len(options) == 1
    opt = options[0]
    assert opt.train_id == "6012"
    assert opt.departure_time == datetime(2026, 1, 23, 14, 5, tzinfo=MSK)
    assert opt.duration == 5400


@pytest.mark.asyncio
async def test_client_maps_http_status_to_transient():
    client = YandexScheduleClient(
        "key", transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    with pytest.raises(TransientError):
        await client.get_options(TAGANROG, ROSTOV, NOW)


@pytest.mark.asyncio
async def test_client_maps_network_error_to_transient():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = YandexScheduleClient("key", transport=httpx.MockTransport(handler))
    with pytest.raises(TransientError):
        await client.get_options(TAGANROG, ROSTOV, NOW)


@pytest.mark.asyncio
async def test_client_maps_bad_json_to_transient():
    client = YandexScheduleClient(
        "key", transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>")))
    with pytest.raises(TransientError):
        await client.get_options(TAGANROG, ROSTOV, NOW)
