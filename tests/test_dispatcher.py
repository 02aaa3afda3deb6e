from __future__ import annotations

import threading
import time
from dataclasses import replace

import pytest

from companion_relay.errors import CancelledError, PipeDisabledError
from companion_relay.pipe import ChatPipe, ChunkBudget, Destination, PipeState


class Recorder:
    def __init__(self) -> None:
        self.lines: list[str] = []
        self.times: list[float] = []

    def __call__(self, line: str) -> None:
        self.lines.append(line)
        self.times.append(time.monotonic())


@pytest.fixture
def fast(settings, monkeypatch):
    """Pipe whose pacing waits are recorded instead of slept."""
    waits: list[float] = []
    monkeypatch.setattr("companion_relay.pipe.dispatcher.time.sleep", lambda s: waits.append(s))
    rec = Recorder()
    return ChatPipe(settings, rec), rec, waits


def _body(line: str) -> str:
    return line.split(" ", 1)[1]


def test_disabled_pipe_refuses(settings):
    pipe = ChatPipe(replace(settings, pipe_enabled=False), Recorder())
    with pytest.raises(PipeDisabledError):
        pipe.send_once("hi", Destination.SAY)
    with pytest.raises(PipeDisabledError):
        pipe.send_streaming(iter(["hi"]), "X: ", Destination.SAY)


def test_send_once_short_text(fast):
    pipe, rec, _ = fast
    assert pipe.send_once("Hello there!", Destination.SAY) == 1
    assert rec.lines == ["/say Companion: Hello there!"]


def test_send_once_party_and_no_prefix(fast):
    pipe, rec, _ = fast
    pipe.send_once("hi", Destination.PARTY, add_prefix=False)
    assert rec.lines == ["/p hi"]


def test_send_once_blank_sends_nothing(fast):
    pipe, rec, _ = fast
    assert pipe.send_once("  \r\n ", Destination.SAY) == 0
    assert rec.lines == []


def test_send_once_long_text_prefixes_and_limits(settings, monkeypatch):
    monkeypatch.setattr("companion_relay.pipe.dispatcher.time.sleep", lambda s: None)
    rec = Recorder()
    pipe = ChatPipe(replace(settings, say_max_line_length=80), rec)
    text = " ".join(f"Sentence number {i} is here." for i in range(20))

    n = pipe.send_once(text, Destination.SAY)

    assert n == len(rec.lines) > 1
    bodies = [_body(line) for line in rec.lines]
    assert bodies[0].startswith("Companion: ")
    assert all(b.startswith("... ") for b in bodies[1:])
    assert all(len(b) <= 80 for b in bodies)
    rebuilt = " ".join([bodies[0][len("Companion: "):]] + [b[4:] for b in bodies[1:]])
    assert rebuilt == text


def test_send_once_normalizes_line_endings_and_control_chars(fast):
    pipe, rec, _ = fast
    pipe.send_once("one\r\ntwo\x07 three", Destination.SAY, add_prefix=False)
    assert rec.lines == ["/say one two three"]


def test_unicode_marker_when_not_ascii_safe(settings, monkeypatch):
    monkeypatch.setattr("companion_relay.pipe.dispatcher.time.sleep", lambda s: None)
    rec = Recorder()
    pipe = ChatPipe(replace(settings, ascii_safe=False, say_max_line_length=100), rec)
    pipe.send_once("word " * 60, Destination.SAY, add_prefix=False)
    assert all(_body(line).startswith("… ") for line in rec.lines[1:])


def test_budget_prefix_gives_way_to_floor():
    b = ChunkBudget.build(64, "A very long display name: ", "... ")
    assert b.first_prefix == ""
    assert b.first_body == 64
    b = ChunkBudget.build(100, "Nunu: ", "... ")
    assert b.first_body == 94
    assert b.continuation_body == 96


def test_pacing_between_sends(settings):
    rec = Recorder()
    pipe = ChatPipe(replace(settings, say_max_line_length=64), rec)
    text = "z" * 180  # three hard-cut lines

    pipe.send_once(text, Destination.SAY, add_prefix=False)

    assert len(rec.times) == 3
    gaps = [b - a for a, b in zip(rec.times, rec.times[1:])]
    assert all(g >= 0.2 - 0.005 for g in gaps)


def test_pacing_waits_use_cancel_event(settings):
    rec = Recorder()
    pipe = ChatPipe(replace(settings, say_max_line_length=64), rec)
    cancel = threading.Event()
    threading.Timer(0.05, cancel.set).start()

    started = time.monotonic()
    with pytest.raises(CancelledError):
        pipe.send_once("q" * 300, Destination.SAY, add_prefix=False, cancel=cancel)

    # The pacing wait woke up on cancel instead of sleeping out its interval.
    assert time.monotonic() - started < 0.2
    assert len(rec.lines) == 1


# ----- streaming -----


def test_stream_flushes_only_at_threshold(fast):
    pipe, rec, _ = fast
    seen_before_second: list[int] = []

    def source():
        yield "a" * 38 + " "
        seen_before_second.append(len(rec.lines))
        yield "b "
        seen_before_second.append(len(rec.lines))

    sent = pipe.send_streaming(source(), "Companion: ", Destination.SAY)

    assert seen_before_second == [0, 1]
    assert rec.lines == ["/say Companion: " + "a" * 38 + " b"]
    assert sent == 1
    assert pipe.state is PipeState.DONE


def test_stream_final_drain_emits_remainder_once(fast):
    pipe, rec, _ = fast
    pipe.send_streaming(iter(["x" * 39]), "Companion: ", Destination.SAY)
    assert rec.lines == ["/say Companion: " + "x" * 39]


def test_stream_keeps_partial_word_until_more_arrives(fast):
    pipe, rec, _ = fast
    pipe.send_streaming(
        iter(["The quick brown fox jumps over the lazy do", "g."]),
        "Companion: ",
        Destination.SAY,
    )
    bodies = [_body(line) for line in rec.lines]
    assert bodies == ["Companion: The quick brown fox jumps over the lazy", "... dog."]


def test_stream_time_threshold_triggers_flush(settings, monkeypatch):
    clock = {"t": 1000.0}
    monkeypatch.setattr("companion_relay.pipe.dispatcher.time.monotonic", lambda: clock["t"])
    monkeypatch.setattr("companion_relay.pipe.dispatcher.time.sleep", lambda s: None)
    rec = Recorder()
    pipe = ChatPipe(settings, rec)

    def source():
        yield "Hi. "
        clock["t"] += 0.31
        yield "there "
        assert len(rec.lines) == 1

    pipe.send_streaming(source(), "C: ", Destination.SAY)
    assert [_body(x) for x in rec.lines] == ["C: Hi. there"]


def test_slow_first_token_does_not_split_a_word(settings, monkeypatch):
    clock = {"t": 1000.0}
    monkeypatch.setattr("companion_relay.pipe.dispatcher.time.monotonic", lambda: clock["t"])
    monkeypatch.setattr("companion_relay.pipe.dispatcher.time.sleep", lambda s: None)
    rec = Recorder()
    pipe = ChatPipe(settings, rec)

    def source():
        clock["t"] += 1.3
        yield "Hel"
        yield "lo there, friend."

    pipe.send_streaming(source(), "C: ", Destination.SAY)
    assert rec.lines == ["/say C: Hello there, friend."]


def test_time_flush_holds_back_a_lone_growing_word(settings, monkeypatch):
    clock = {"t": 1000.0}
    monkeypatch.setattr("companion_relay.pipe.dispatcher.time.monotonic", lambda: clock["t"])
    monkeypatch.setattr("companion_relay.pipe.dispatcher.time.sleep", lambda s: None)
    rec = Recorder()
    pipe = ChatPipe(settings, rec)

    def source():
        yield "Incompre"
        clock["t"] += 0.5
        yield "hensi"
        assert rec.lines == []
        clock["t"] += 0.5
        yield "ble!"

    pipe.send_streaming(source(), "C: ", Destination.SAY)
    assert rec.lines == ["/say C: Incomprehensible!"]


def test_state_is_tracked_per_thread(settings, monkeypatch):
    monkeypatch.setattr("companion_relay.pipe.dispatcher.time.sleep", lambda s: None)
    pipe = ChatPipe(settings, Recorder())
    release = threading.Event()
    seen: dict[str, PipeState] = {}

    def slow_source():
        yield "first "
        release.wait(2)
        yield "done."

    def worker():
        pipe.send_streaming(slow_source(), "C: ", Destination.SAY)
        seen["worker"] = pipe.state

    t = threading.Thread(target=worker)
    t.start()
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(CancelledError):
        pipe.send_streaming(iter(["x"]), "C: ", Destination.SAY, cancel)
    seen["main"] = pipe.state
    release.set()
    t.join(5)

    assert seen == {"main": PipeState.CANCELLED, "worker": PipeState.DONE}


def test_stream_long_output_respects_budgets(settings, monkeypatch):
    monkeypatch.setattr("companion_relay.pipe.dispatcher.time.sleep", lambda s: None)
    rec = Recorder()
    pipe = ChatPipe(replace(settings, say_max_line_length=100), rec)
    words = [f"word{i} " for i in range(200)]

    pipe.send_streaming(iter(words), "Companion: ", Destination.SAY)

    bodies = [_body(line) for line in rec.lines]
    assert all(len(b) <= 100 for b in bodies)
    assert bodies[0].startswith("Companion: ")
    assert all(b.startswith("... ") for b in bodies[1:])
    rebuilt = " ".join([bodies[0][len("Companion: "):]] + [b[4:] for b in bodies[1:]])
    assert rebuilt == "".join(words).strip()


def test_stream_cancel_stops_consumption_and_closes_source(fast):
    pipe, rec, _ = fast
    cancel = threading.Event()
    pulled: list[int] = []
    closed: list[bool] = []

    def source():
        try:
            for i in range(100):
                pulled.append(i)
                if i == 3:
                    cancel.set()
                yield f"chunk{i} " * 10
        finally:
            closed.append(True)

    with pytest.raises(CancelledError):
        pipe.send_streaming(source(), "C: ", Destination.SAY, cancel)

    assert pipe.state is PipeState.CANCELLED
    assert len(pulled) == 4
    assert closed == [True]
    # Lines already sent stay sent.
    assert len(rec.lines) == 3
