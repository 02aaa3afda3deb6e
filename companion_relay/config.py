from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from companion_relay.errors import ConfigError
from companion_relay.pipe.destinations import Destination

# Floors/caps applied to the values read from the environment.
MIN_LINE_LENGTH = 64
MAX_LINE_LENGTH = 500
MIN_SEND_DELAY_MS = 200
MIN_FLUSH_CHARS = 40
MIN_FLUSH_MS = 300
MIN_TIMEOUT_S = 5.0


@dataclass(frozen=True)
class Settings:
    base_url: str = "http://127.0.0.1:11434"
    api_key: str | None = None
    model: str = "llama3.1"
    temperature: float = 0.7
    max_tokens: int = 0
    request_timeout_s: float = 120.0
    max_history_messages: int = 20
    stream_responses: bool = True

    display_name: str = "Companion"
    persona_file: Path = Path("persona.md")
    system_prompt_override: str = ""

    pipe_enabled: bool = True
    ascii_safe: bool = True
    say_max_line_length: int = 450
    party_max_line_length: int = 450
    send_delay_ms: int = 750
    stream_flush_chars: int = 160
    stream_flush_ms: int = 1200

    say_trigger: str = "@companion"
    party_trigger: str = "@companion"
    require_whitelist: bool = False
    say_whitelist: tuple[str, ...] = field(default_factory=tuple)
    party_whitelist: tuple[str, ...] = field(default_factory=tuple)

    log_dir: Path = Path("logs")
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        # Frozen, so clamp through object.__setattr__.
        clamp = {
            "say_max_line_length": min(MAX_LINE_LENGTH, max(MIN_LINE_LENGTH, self.say_max_line_length)),
            "party_max_line_length": min(MAX_LINE_LENGTH, max(MIN_LINE_LENGTH, self.party_max_line_length)),
            "send_delay_ms": max(MIN_SEND_DELAY_MS, self.send_delay_ms),
            "stream_flush_chars": max(MIN_FLUSH_CHARS, self.stream_flush_chars),
            "stream_flush_ms": max(MIN_FLUSH_MS, self.stream_flush_ms),
            "request_timeout_s": max(MIN_TIMEOUT_S, self.request_timeout_s),
            "max_history_messages": max(1, self.max_history_messages),
            "max_tokens": max(0, self.max_tokens),
            "temperature": min(2.0, max(0.0, self.temperature)),
        }
        for name, value in clamp.items():
            object.__setattr__(self, name, value)

    def max_line_length(self, destination: Destination) -> int:
        if destination is Destination.PARTY:
            return self.party_max_line_length
        return self.say_max_line_length


def load_settings() -> Settings:
    # Allow users to keep secrets in a local `.env` (not committed).
    load_dotenv(override=False)

    def getenv(key: str, default: str | None = None) -> str | None:
        v = os.getenv(key)
        if v is None or v.strip() == "":
            return default
        return v.strip()

    def getint(key: str, default: int) -> int:
        raw = getenv(key)
        if raw is None:
            return default
        try:
            return int(raw)
        except ValueError as e:
            raise ConfigError(f"{key} must be an integer, got {raw!r}") from e

    def getfloat(key: str, default: float) -> float:
        raw = getenv(key)
        if raw is None:
            return default
        try:
            return float(raw)
        except ValueError as e:
            raise ConfigError(f"{key} must be a number, got {raw!r}") from e

    def getbool(key: str, default: bool) -> bool:
        raw = getenv(key)
        if raw is None:
            return default
        lowered = raw.lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ConfigError(f"{key} must be a boolean, got {raw!r}")

    def getlist(key: str) -> tuple[str, ...]:
        raw = getenv(key, "") or ""
        return tuple(p.strip() for p in raw.split(",") if p.strip())

    return Settings(
        base_url=getenv("RELAY_BASE_URL", "http://127.0.0.1:11434") or "",
        api_key=getenv("RELAY_API_KEY", None),
        model=getenv("RELAY_MODEL", "llama3.1") or "",
        temperature=getfloat("RELAY_TEMPERATURE", 0.7),
        max_tokens=getint("RELAY_MAX_TOKENS", 0),
        request_timeout_s=getfloat("RELAY_TIMEOUT_S", 120.0),
        max_history_messages=getint("RELAY_MAX_HISTORY", 20),
        stream_responses=getbool("RELAY_STREAM", True),
        display_name=getenv("RELAY_DISPLAY_NAME", "Companion") or "",
        persona_file=Path(getenv("RELAY_PERSONA_FILE", "persona.md") or "persona.md"),
        system_prompt_override=getenv("RELAY_SYSTEM_PROMPT", "") or "",
        pipe_enabled=getbool("RELAY_PIPE_ENABLED", True),
        ascii_safe=getbool("RELAY_ASCII_SAFE", True),
        say_max_line_length=getint("RELAY_SAY_MAX_LINE", 450),
        party_max_line_length=getint("RELAY_PARTY_MAX_LINE", 450),
        send_delay_ms=getint("RELAY_SEND_DELAY_MS", 750),
        stream_flush_chars=getint("RELAY_FLUSH_CHARS", 160),
        stream_flush_ms=getint("RELAY_FLUSH_MS", 1200),
        say_trigger=getenv("RELAY_SAY_TRIGGER", "@companion") or "",
        party_trigger=getenv("RELAY_PARTY_TRIGGER", "@companion") or "",
        require_whitelist=getbool("RELAY_REQUIRE_WHITELIST", False),
        say_whitelist=getlist("RELAY_SAY_WHITELIST"),
        party_whitelist=getlist("RELAY_PARTY_WHITELIST"),
        log_dir=Path(getenv("RELAY_LOG_DIR", "logs") or "logs").resolve(),
        log_level=(getenv("RELAY_LOG_LEVEL", "INFO") or "INFO").upper(),
    )
