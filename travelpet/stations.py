"""Station directory: a fixed catalog of Yandex.Rasp station codes.

Entries are ordered by popularity, so the head of the list doubles as the
"popular stations" shortcut list.  Names are kept exactly as the provider
spells them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass


@dataclass(frozen=True)
class Station:
    code: str
    name: str


CATALOG: tuple[Station, ...] = (
    # Taganrog ↔ Rostov commuter line (most used)
    Station("s9634302", "Красный Котельщик"),
    Station("s9613483", "Таганрог-Пассажирский (Старый вокзал)"),
    Station("s9613171", "Таганрог-1 (Новый вокзал)"),
    Station("s9612913", "Ростов-Главный"),
    Station("s9612914", "Ростов-Товарный"),
    Station("s9613486", "Мержаново"),
    Station("s9613487", "Матвеев Курган"),
    Station("s9613488", "Куйбышево"),
    Station("s9613489", "Синявка"),
    Station("s9613490", "Чалтырь"),
    Station("s9613491", "Большие Салы"),
    Station("s9613492", "Батайск"),
    Station("s9613493", "Азов"),
    Station("s9613255", "Бессергеновка"),
    Station("s9613383", "1283 км"),
    # Southern Russia
    Station("s9607404", "Краснодар"),
    Station("s9623547", "Анапа"),
    Station("s9607398", "Сочи"),
    Station("s9635385", "Адлер"),
    Station("s9635145", "Новороссийск"),
    Station("s9620770", "Волгоград"),
    Station("s9635134", "Туапсе"),
    # Moscow
    Station("s2000002", "Москва (Курский вокзал)"),
    Station("s2000006", "Москва (Казанский вокзал)"),
    Station("s2000003", "Москва (Ярославский вокзал)"),
    Station("s2000004", "Москва (Ленинградский вокзал)"),
    Station("s2000005", "Москва (Павелецкий вокзал)"),
    Station("s2000001", "Москва (Киевский вокзал)"),
    Station("s2000007", "Москва (Белорусский вокзал)"),
    # Saint Petersburg
    Station("s2004001", "Санкт-Петербург (Московский вокзал)"),
    Station("s2004006", "Санкт-Петербург (Витебский вокзал)"),
    Station("s2004003", "Санкт-Петербург (Ладожский вокзал)"),
    Station("s2004004", "Санкт-Петербург (Финляндский вокзал)"),
    # Volga, Ural, Siberia
    Station("s9610171", "Казань"),
    Station("s9623443", "Нижний Новгород"),
    Station("s9608105", "Самара"),
    Station("s9623290", "Саратов"),
    Station("s9607693", "Екатеринбург"),
    Station("s9607795", "Челябинск"),
    Station("s9607120", "Новосибирск"),
    # Central Russia
    Station("s9612893", "Воронеж"),
    Station("s9613016", "Белгород"),
    Station("s9607881", "Тула"),
    # North Caucasus
    Station("s9635342", "Минеральные Воды"),
    Station("s9635329", "Пятигорск"),
    Station("s9635331", "Кисловодск"),
)

MAX_SEARCH_RESULTS = 10

_CODE_RE = re.compile(r"^s?(\d+)$", re.IGNORECASE)


def normalize_code(code: str) -> str:
    """Bring a station code into the provider's ``s<digits>`` form."""
    code = code.strip()
    m = _CODE_RE.match(code)
    if m:
        return "s" + m.group(1)
    return code


def popular(limit: int) -> list[Station]:
    return list(CATALOG[:limit])


def by_index(index: int) -> Station | None:
    if 0 <= index < len(CATALOG):
        return CATALOG[index]
    return None


def by_code(code: str) -> Station | None:
    code = normalize_code(code)
    for station in CATALOG:
        if station.code == code:
            return station
    return None


def display_name(code: str) -> str:
    """Catalog name for *code*, or the code itself when it is not catalogued."""
    station = by_code(code)
    return station.name if station else code


def search(query: str) -> list[Station]:
    """Case-insensitive substring search, capped at MAX_SEARCH_RESULTS.

    An empty query returns the most popular stations.
    """
    q = query.strip().lower()
    if not q:
        return popular(MAX_SEARCH_RESULTS)
    hits = [s for s in CATALOG if q in s.name.lower()]
    return hits[:MAX_SEARCH_RESULTS]


def resolve(text: str) -> Station | None:
    """Turn manual user input into a station.

    Accepted forms, in order: a catalogued code (``s9613483`` or ``9613483``),
    an exact catalog name, a substring matching exactly one catalog name, or
    an uncatalogued code that is passed through with its digits as the name.
    """
    text = text.strip()
    if not text:
        return None

    station = by_code(text)
    if station:
        return station

    q = text.lower()
    for s in CATALOG:
        if s.name.lower() == q:
            return s

    hits = search(text)
    if len(hits) == 1:
        return hits[0]

    if _CODE_RE.match(text):
        code = normalize_code(text)
        return Station(code, code)
    return None
