from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Iterable

from companion_relay.errors import CancelledError, PipeDisabledError

from .chunker import chunk_text, take_piece
from .destinations import Destination, SendLine, sanitize_line

if TYPE_CHECKING:
    from companion_relay.config import Settings

logger = logging.getLogger(__name__)

MIN_BODY_BUDGET = 64


class PipeState(Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FLUSHING = "flushing"
    DRAINING = "draining"
    DONE = "done"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ChunkBudget:
    max_line_length: int
    first_prefix: str
    continuation_prefix: str

    @staticmethod
    def _fit(prefix: str, max_line_length: int) -> str:
        # The prefix gives way before the body budget drops under the floor.
        room = max(0, max_line_length - MIN_BODY_BUDGET)
        return prefix[:room]

    @classmethod
    def build(cls, max_line_length: int, first_prefix: str, continuation_prefix: str) -> "ChunkBudget":
        return cls(
            max_line_length=max_line_length,
            first_prefix=cls._fit(first_prefix, max_line_length),
            continuation_prefix=cls._fit(continuation_prefix, max_line_length),
        )

    @property
    def first_body(self) -> int:
        return max(MIN_BODY_BUDGET, self.max_line_length - len(self.first_prefix))

    @property
    def continuation_body(self) -> int:
        return max(MIN_BODY_BUDGET, self.max_line_length - len(self.continuation_prefix))


class _Pacer:
    """Keeps sends of one dispatch call at least `interval_s` apart."""

    def __init__(self, interval_s: float, cancel: threading.Event | None) -> None:
        self.interval_s = interval_s
        self.cancel = cancel
        self.last_send: float | None = None

    def check(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise CancelledError("Dispatch cancelled")

    def wait_turn(self) -> None:
        self.check()
        if self.last_send is None:
            return
        remaining = self.interval_s - (time.monotonic() - self.last_send)
        if remaining <= 0:
            return
        if self.cancel is not None:
            if self.cancel.wait(remaining):
                raise CancelledError("Dispatch cancelled")
        else:
            time.sleep(remaining)

    def mark(self) -> None:
        self.last_send = time.monotonic()


class ChatPipe:
    """
    Relays text into a length- and rate-limited chat destination.

    `send` is the external capability that posts one finished line
    (e.g. "/say Companion: hello"). Lines of one call go out in order,
    paced by settings.send_delay_ms.
    """

    def __init__(self, settings: Settings, send: SendLine, *, display_name: str | None = None) -> None:
        self.settings = settings
        self.send = send
        self.display_name = (display_name or settings.display_name or "Companion").strip()
        self._local = threading.local()

    @property
    def state(self) -> PipeState:
        """State of the latest streaming call made from the current thread."""
        return getattr(self._local, "state", PipeState.IDLE)

    @state.setter
    def state(self, value: PipeState) -> None:
        self._local.state = value

    @property
    def continuation_marker(self) -> str:
        return "... " if self.settings.ascii_safe else "… "

    def _require_enabled(self) -> None:
        if not self.settings.pipe_enabled:
            raise PipeDisabledError("Chat pipe is disabled (RELAY_PIPE_ENABLED=false)")

    def _prepare(self, text: str) -> str:
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        return sanitize_line(text, ascii_safe=self.settings.ascii_safe)

    def _budget(self, destination: Destination, first_prefix: str) -> ChunkBudget:
        return ChunkBudget.build(
            self.settings.max_line_length(destination),
            self._prepare(first_prefix),
            self.continuation_marker,
        )

    def _emit(self, pacer: _Pacer, destination: Destination, prefix: str, body: str) -> None:
        body = " ".join(body.split())
        if not body:
            return
        pacer.wait_turn()
        line = f"{destination.command} {prefix}{body}"
        self.send(line)
        pacer.mark()
        logger.debug("Sent %d chars to %s", len(prefix) + len(body), destination.value)

    def send_once(
        self,
        text: str,
        destination: Destination,
        add_prefix: bool = True,
        cancel: threading.Event | None = None,
    ) -> int:
        """Chunk and send a finished text. Returns the number of lines sent."""
        self._require_enabled()
        first_prefix = f"{self.display_name}: " if add_prefix else ""
        budget = self._budget(destination, first_prefix)
        pacer = _Pacer(self.settings.send_delay_ms / 1000.0, cancel)

        body = self._prepare(text)
        chunks = chunk_text(body, budget.first_body)
        # Later lines carry a different prefix; re-cut any that overflow its budget.
        chunks = chunks[:1] + [p for c in chunks[1:] for p in chunk_text(c, budget.continuation_body)]

        sent = 0
        for i, chunk in enumerate(chunks):
            prefix = budget.first_prefix if i == 0 else budget.continuation_prefix
            self._emit(pacer, destination, prefix, chunk)
            sent += 1
        logger.info("Relayed %d line(s) to %s", sent, destination.value)
        return sent

    def send_streaming(
        self,
        fragments: Iterable[str],
        first_line_header: str,
        destination: Destination,
        cancel: threading.Event | None = None,
    ) -> int:
        """
        Relay a live fragment stream. Returns the number of lines sent.

        Buffered text is flushed once it reaches stream_flush_chars or after
        stream_flush_ms since the last flush, one budget-sized piece at a time.
        Whatever remains when the source ends is drained in full.
        """
        self._require_enabled()
        budget = self._budget(destination, first_line_header)
        pacer = _Pacer(self.settings.send_delay_ms / 1000.0, cancel)
        flush_chars = self.settings.stream_flush_chars
        flush_s = self.settings.stream_flush_ms / 1000.0

        buffer = ""
        sent = 0
        last_flush: float | None = None

        def flush_one(final: bool) -> bool:
            nonlocal buffer, sent
            first = sent == 0
            limit = budget.first_body if first else budget.continuation_body
            piece, buffer = take_piece(buffer, limit, final=final)
            if not piece:
                return False
            self._emit(pacer, destination, budget.first_prefix if first else budget.continuation_prefix, piece)
            sent += 1
            return True

        self.state = PipeState.ACCUMULATING
        source = iter(fragments)
        try:
            for fragment in source:
                pacer.check()
                if not fragment:
                    continue
                buffer += self._prepare(fragment)
                now = time.monotonic()
                if last_flush is None:
                    # The flush clock starts with the first text, not with the request.
                    last_flush = now
                if len(buffer) >= flush_chars or (now - last_flush) >= flush_s:
                    self.state = PipeState.FLUSHING
                    flush_one(final=False)
                    limit = budget.continuation_body
                    while len(buffer) > limit and flush_one(final=False):
                        pass
                    last_flush = time.monotonic()
                    self.state = PipeState.ACCUMULATING

            self.state = PipeState.DRAINING
            while buffer.strip() and flush_one(final=True):
                pass
        except CancelledError:
            self.state = PipeState.CANCELLED
            logger.info("Streaming relay cancelled after %d line(s)", sent)
            raise
        finally:
            # Releases the upstream connection when the source is a generator.
            close = getattr(source, "close", None)
            if close is not None:
                close()

        self.state = PipeState.DONE
        logger.info("Relayed %d streamed line(s) to %s", sent, destination.value)
        return sent
