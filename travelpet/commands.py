"""Button commands.

Inline buttons carry a compact ``action:param`` token (Telegram limits
callback data to 64 bytes).  Tokens are decoded exactly once, at the
transport boundary, into one of the command types below; the controller
only ever sees these.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from travelpet.domain import ValidationError


class MalformedCommand(ValidationError):
    """Callback data that does not decode to a known command."""


@dataclass(frozen=True)
class Back:
    pass


@dataclass(frozen=True)
class Cancel:
    pass


@dataclass(frozen=True)
class SelectStation:
    recent: bool  # True: index into the session's recent list; False: into the catalog
    index: int


@dataclass(frozen=True)
class SelectTrain:
    index: int


@dataclass(frozen=True)
class ChangePage:
    page: int


@dataclass(frozen=True)
class EditFrom:
    pass


@dataclass(frozen=True)
class EditTo:
    pass


@dataclass(frozen=True)
class ManualEntry:
    pass


@dataclass(frozen=True)
class Retry:
    pass


@dataclass(frozen=True)
class Noop:
    pass


Command = Union[Back, Cancel, SelectStation, SelectTrain, ChangePage,
                EditFrom, EditTo, ManualEntry, Retry, Noop]

_BARE = {
    "b": Back,
    "x": Cancel,
    "ef": EditFrom,
    "et": EditTo,
    "ti": ManualEntry,
    "rt": Retry,
    "noop": Noop,
}
_BARE_TOKENS = {cls: token for token, cls in _BARE.items()}


def _int(value: str) -> int:
    if not (value.isascii() and value.isdigit()):
        raise MalformedCommand("Malformed button data.")
    return int(value)


def decode(data: str) -> Command:
    """Parse callback data into a command; MalformedCommand if it is not one."""
    action, _, param = (data or "").partition(":")

    if action in _BARE and not param:
        return _BARE[action]()
    if action == "ss" and len(param) > 1 and param[0] in "rp":
        return SelectStation(recent=param[0] == "r", index=_int(param[1:]))
    if action == "tr":
        return SelectTrain(_int(param))
    if action == "sp":
        return ChangePage(_int(param))

    # Tokens from messages sent by older versions of the bot
    if action == "train":
        return SelectTrain(_int(param))
    if data == "cancel":
        return Cancel()

    raise MalformedCommand("Unknown command.")


def encode(command: Command) -> str:
    if isinstance(command, SelectStation):
        return f"ss:{'r' if command.recent else 'p'}{command.index}"
    if isinstance(command, SelectTrain):
        return f"tr:{command.index}"
    if isinstance(command, ChangePage):
        return f"sp:{command.page}"
    return _BARE_TOKENS[type(command)]
