from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable


@dataclass(frozen=True)
class RunLogPaths:
    run_id: str
    jsonl_path: Path


def make_run_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def init_run_log(log_dir: Path, run_id: str) -> RunLogPaths:
    log_dir.mkdir(parents=True, exist_ok=True)
    return RunLogPaths(run_id=run_id, jsonl_path=log_dir / f"run_{run_id}.jsonl")


def append_event(paths: RunLogPaths, event: str, **extra: Any) -> None:
    payload: dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "run_id": paths.run_id,
        "event": event,
    }
    payload.update(extra)
    with paths.jsonl_path.open("a", encoding="utf-8", newline="\n") as f:
        f.write(json.dumps(payload, ensure_ascii=False) + "\n")


def logged_sender(paths: RunLogPaths | None, send: Callable[[str], None]) -> Callable[[str], None]:
    """Wrap a send capability so every dispatched line is also written to the run log."""
    if paths is None:
        return send

    def _send(line: str) -> None:
        send(line)
        append_event(paths, "sent", line=line, chars=len(line))

    return _send


def read_events(paths: RunLogPaths) -> list[dict[str, Any]]:
    if not paths.jsonl_path.exists():
        return []
    out: list[dict[str, Any]] = []
    for raw in paths.jsonl_path.read_text(encoding="utf-8").splitlines():
        raw = raw.strip()
        if not raw:
            continue
        try:
            out.append(json.loads(raw))
        except json.JSONDecodeError:
            continue
    return out
