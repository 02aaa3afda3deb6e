from __future__ import annotations

import argparse
import logging
import sys
import threading

from rich.console import Console
from rich.logging import RichHandler

from companion_relay.config import Settings, load_settings
from companion_relay.errors import CancelledError, ConfigError, RelayError
from companion_relay.llm import ChatClient, ChatMessage
from companion_relay.pipe import ChatPipe, ConsoleSender, Destination
from companion_relay.router import TriggerRouter
from companion_relay.utils.run_log import (
    RunLogPaths,
    append_event,
    init_run_log,
    logged_sender,
    make_run_id,
    read_events,
)


def _configure_logging(level: str, console: Console) -> None:
    if not isinstance(logging.getLevelName(level), int):
        raise ConfigError(f"RELAY_LOG_LEVEL: unknown log level {level!r}")
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def relay_turn(
    client: ChatClient,
    pipe: ChatPipe,
    history: list[ChatMessage],
    prompt: str,
    destination: Destination,
    *,
    stream: bool,
    cancel: threading.Event | None = None,
) -> str:
    """
    Ask the backend and relay the answer. Returns the full answer text.

    History is only extended once the answer was relayed completely, so a
    cancelled or failed turn leaves no partial assistant message behind.
    """
    if stream:
        parts: list[str] = []

        def collect():
            for fragment in client.chat_stream(history, prompt, cancel):
                parts.append(fragment)
                yield fragment

        pipe.send_streaming(collect(), f"{pipe.display_name}: ", destination, cancel)
        answer = "".join(parts).strip()
    else:
        answer = client.chat_once(history, prompt, cancel)
        pipe.send_once(answer, destination, True, cancel)

    history.append(ChatMessage("user", prompt))
    history.append(ChatMessage("assistant", answer))
    return answer


def _run_turn(console: Console, log_paths: RunLogPaths | None, **kwargs) -> None:
    try:
        answer = relay_turn(**kwargs)
    except (KeyboardInterrupt, CancelledError):
        # Cancelled turns print nothing and are not committed.
        if log_paths:
            append_event(log_paths, "cancelled", prompt=kwargs["prompt"])
        return
    except RelayError as e:
        console.print(f"[bold red]error[/bold red]: {e}")
        if log_paths:
            append_event(log_paths, "error", prompt=kwargs["prompt"], error=str(e))
        return
    if log_paths:
        append_event(log_paths, "answered", prompt=kwargs["prompt"], chars=len(answer))


def _print_summary(console: Console, log_paths: RunLogPaths) -> None:
    events = read_events(log_paths)
    counts = {name: 0 for name in ("sent", "answered", "error", "cancelled")}
    for e in events:
        if e.get("event") in counts:
            counts[e["event"]] += 1
    console.print(f"[bold]run_log[/bold]: {log_paths.jsonl_path}")
    console.print(
        f"[bold]lines[/bold]: {counts['sent']}  [bold]answered[/bold]: {counts['answered']}  "
        f"[bold]errors[/bold]: {counts['error']}  [bold]cancelled[/bold]: {counts['cancelled']}"
    )


def _parse_listen_line(raw: str) -> tuple[str, str, str] | None:
    parts = raw.rstrip("\n").split("|", 2)
    if len(parts) != 3:
        return None
    return parts[0], parts[1], parts[2]


def main(argv: list[str] | None = None) -> int:
    # Best-effort fix for terminals not defaulting to UTF-8.
    try:
        sys.stdout.reconfigure(encoding="utf-8")
        sys.stderr.reconfigure(encoding="utf-8")
    except Exception:
        pass

    parser = argparse.ArgumentParser(prog="companion-relay")
    parser.add_argument("--no-log", action="store_true", help="do not write logs/run_*.jsonl")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("check", help="probe the backend and report which protocol it speaks")

    ask = sub.add_parser("ask", help="ask once and relay the answer")
    ask.add_argument("prompt", type=str)
    ask.add_argument("--to", default="say", help="destination: say | party")
    ask.add_argument("--no-stream", action="store_true", help="wait for the whole answer before relaying")

    sub.add_parser("listen", help="read 'channel|sender|text' lines from stdin and answer triggers")

    args = parser.parse_args(argv)

    console = Console()
    try:
        settings: Settings = load_settings()
        _configure_logging(settings.log_level, console)
    except ConfigError as e:
        console.print(f"[bold red]config error[/bold red]: {e}")
        return 2

    client = ChatClient(settings)

    if args.command == "check":
        ok, detail = client.test_connection()
        if ok:
            console.print(f"[bold green]ok[/bold green]: {detail}")
            return 0
        console.print(f"[bold red]failed[/bold red]: {detail}")
        return 1

    log_paths = None if args.no_log else init_run_log(settings.log_dir, make_run_id())
    pipe = ChatPipe(settings, logged_sender(log_paths, ConsoleSender(console)))
    stream = settings.stream_responses
    history: list[ChatMessage] = []

    if args.command == "ask":
        try:
            destination = Destination.parse(args.to)
        except ValueError as e:
            console.print(f"[bold red]error[/bold red]: {e}")
            return 2
        _run_turn(
            console,
            log_paths,
            client=client,
            pipe=pipe,
            history=history,
            prompt=args.prompt,
            destination=destination,
            stream=stream and not args.no_stream,
        )
        if log_paths:
            _print_summary(console, log_paths)
        return 0

    router = TriggerRouter(settings)
    console.rule("companion-relay listening")
    for raw in sys.stdin:
        parsed = _parse_listen_line(raw)
        if parsed is None:
            continue
        routed = router.route(*parsed)
        if routed is None:
            continue
        _run_turn(
            console,
            log_paths,
            client=client,
            pipe=pipe,
            history=history,
            prompt=routed.payload,
            destination=routed.destination,
            stream=stream,
        )
    if log_paths:
        _print_summary(console, log_paths)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
