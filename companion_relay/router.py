from __future__ import annotations

import logging
from dataclasses import dataclass

from companion_relay.config import Settings
from companion_relay.pipe.destinations import Destination

logger = logging.getLogger(__name__)

SAY_CHANNELS = ("say", "shout", "yell")
PARTY_CHANNELS = ("party",)


@dataclass(frozen=True)
class RoutedPrompt:
    payload: str
    destination: Destination
    sender: str


def _is_whitelisted(whitelist: tuple[str, ...], name: str) -> bool:
    wanted = name.strip().lower()
    return any(entry.strip().lower() == wanted for entry in whitelist if entry.strip())


class TriggerRouter:
    """Decides whether an incoming chat line is addressed to the companion."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def route(self, channel: str, sender: str, text: str) -> RoutedPrompt | None:
        channel = (channel or "").strip().lower()
        text = text or ""
        if channel in SAY_CHANNELS:
            trigger, whitelist, destination = self.settings.say_trigger, self.settings.say_whitelist, Destination.SAY
        elif channel in PARTY_CHANNELS:
            trigger, whitelist, destination = (
                self.settings.party_trigger,
                self.settings.party_whitelist,
                Destination.PARTY,
            )
        else:
            return None

        if not trigger.strip() or not text.lower().startswith(trigger.lower()):
            return None
        if self.settings.require_whitelist and not _is_whitelisted(whitelist, sender or ""):
            logger.info("Ignoring trigger from %r on %s: not whitelisted", sender, channel)
            return None

        payload = text[len(trigger):].strip()
        if not payload:
            return None
        return RoutedPrompt(payload=payload, destination=destination, sender=(sender or "").strip())
