from __future__ import annotations

import unicodedata
from enum import Enum
from typing import Callable

from rich.console import Console
from rich.markup import escape

# External capability: post one finished line. Fire-and-forget.
SendLine = Callable[[str], None]


class Destination(Enum):
    SAY = "say"
    PARTY = "party"

    @property
    def command(self) -> str:
        return _COMMANDS[self]

    @classmethod
    def parse(cls, value: str) -> "Destination":
        v = (value or "").strip().lower().lstrip("/")
        if v in ("p", "party"):
            return cls.PARTY
        if v in ("s", "say"):
            return cls.SAY
        raise ValueError(f"Unknown destination {value!r} (expected 'say' or 'party')")


_COMMANDS = {
    Destination.SAY: "/say",
    Destination.PARTY: "/p",
}

_ASCII_FOLDS = {
    "\u2018": "'",
    "\u2019": "'",
    "\u201a": "'",
    "\u201c": '"',
    "\u201d": '"',
    "\u201e": '"',
    "\u2013": "-",
    "\u2014": "-",
    "\u2026": "...",
    "\u00a0": " ",
}


def sanitize_line(text: str, *, ascii_safe: bool) -> str:
    """
    Strip characters the chat input would eat.
    Control characters go (newline/tab survive); in ascii_safe mode typographic
    punctuation is folded to ASCII and anything else non-ASCII is decomposed or dropped.
    """
    out: list[str] = []
    for ch in text:
        if ch in ("\n", "\t"):
            out.append(ch)
            continue
        if unicodedata.category(ch) == "Cc":
            continue
        if ascii_safe and ord(ch) > 127:
            if ch in _ASCII_FOLDS:
                out.append(_ASCII_FOLDS[ch])
                continue
            base = unicodedata.normalize("NFKD", ch).encode("ascii", "ignore").decode("ascii")
            out.append(base)
            continue
        out.append(ch)
    return "".join(out)


class ConsoleSender:
    """Send capability that prints each destination line instead of posting it."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()
        self.sent: list[str] = []

    def __call__(self, line: str) -> None:
        self.sent.append(line)
        self.console.print(f"[cyan]>>[/cyan] {escape(line)}")
