from __future__ import annotations

import logging
from typing import Iterable, Iterator

from pydantic import ValidationError

from .protocols import CompletionResponse

logger = logging.getLogger(__name__)

DATA_MARKER = "data:"
DONE_SENTINEL = "[DONE]"


def iter_stream_fragments(lines: Iterable[str]) -> Iterator[str]:
    """
    Turn newline-delimited `data: {...}` frames into text fragments.

    Stops at `data: [DONE]` without reading further lines. Malformed or partial
    frames are skipped: interleaved network buffering delivers those routinely.
    """
    for line in lines:
        if not line or not line.strip():
            continue
        if not line.startswith(DATA_MARKER):
            continue
        payload = line[len(DATA_MARKER):].strip()
        if payload == DONE_SENTINEL:
            return
        try:
            frame = CompletionResponse.model_validate_json(payload)
        except ValidationError:
            logger.debug("Skipping unparseable stream frame: %.80s", payload)
            continue
        if not frame.choices:
            continue
        delta = frame.choices[0].delta
        if delta is not None and delta.content:
            yield delta.content
