from __future__ import annotations

import logging

from companion_relay.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_PERSONA = (
    "You are a friendly companion chatting inside a game. "
    "Stay in character, keep replies short and conversational, "
    "and never mention that you are relaying text."
)


class PersonaManager:
    """Active system prompt: inline override, else the persona file, else the built-in default."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def system_prompt(self) -> str:
        override = (self.settings.system_prompt_override or "").strip()
        if override:
            return override

        path = self.settings.persona_file
        try:
            if path.is_file():
                text = path.read_text(encoding="utf-8").strip()
                if text:
                    return text
        except OSError as e:
            logger.warning("Could not read persona file %s: %s", path, e)
        return DEFAULT_PERSONA
