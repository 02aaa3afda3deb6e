from __future__ import annotations

import re

# Break after ". ", "! ", "? " and at newlines.
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])[ \t]+|[ \t]*\n\s*")
_SOFT_BREAK = re.compile(r"[.!?][ \t]+|\n")


def _hard_cut(word: str, max_length: int) -> list[str]:
    return [word[i : i + max_length] for i in range(0, len(word), max_length)]


def _split_words(segment: str, max_length: int) -> list[str]:
    pieces: list[str] = []
    buf = ""
    for word in segment.split():
        if len(word) > max_length:
            if buf:
                pieces.append(buf)
            cuts = _hard_cut(word, max_length)
            pieces.extend(cuts[:-1])
            buf = cuts[-1]
        elif not buf:
            buf = word
        elif len(buf) + 1 + len(word) <= max_length:
            buf = f"{buf} {word}"
        else:
            pieces.append(buf)
            buf = word
    if buf:
        pieces.append(buf)
    return pieces


def chunk_text(text: str, max_length: int) -> list[str]:
    """
    Split text into pieces of at most max_length characters.

    Prefers sentence boundaries, then word boundaries; a word longer than
    max_length is hard-cut into fixed-size pieces. Blank input yields [].
    """
    if max_length < 1:
        raise ValueError("max_length must be >= 1")
    stripped = (text or "").strip()
    if not stripped:
        return []
    if len(stripped) <= max_length:
        return [stripped]

    segments: list[str] = []
    for seg in _SENTENCE_BREAK.split(stripped):
        seg = seg.strip()
        if not seg:
            continue
        if len(seg) > max_length:
            segments.extend(_split_words(seg, max_length))
        else:
            segments.append(seg)

    chunks: list[str] = []
    buf = ""
    for seg in segments:
        if not buf:
            buf = seg
        elif len(buf) + 1 + len(seg) <= max_length:
            buf = f"{buf} {seg}"
        else:
            chunks.append(buf)
            buf = seg
    if buf:
        chunks.append(buf)
    return chunks


def take_piece(buffer: str, max_length: int, *, final: bool) -> tuple[str, str]:
    """
    Cut one piece of at most max_length characters off the front of buffer.

    Returns (piece, rest). The cut prefers the last sentence break, then the
    last whitespace, then a hard cut. When not final, a trailing partial word
    stays in `rest` so a word still being streamed is not split.
    """
    if max_length < 1:
        raise ValueError("max_length must be >= 1")
    buffer = buffer.lstrip()
    if not buffer:
        return "", ""

    if len(buffer) <= max_length:
        if final:
            return buffer.rstrip(), ""
        cut = max(buffer.rfind(" "), buffer.rfind("\n"), buffer.rfind("\t"))
        if buffer[-1].isspace():
            return buffer.rstrip(), ""
        if cut <= 0:
            # A lone word may still be growing; a full-width one goes as is.
            if len(buffer) < max_length:
                return "", buffer
            return buffer, ""
        return buffer[:cut].rstrip(), buffer[cut:].lstrip()

    window = buffer[: max_length + 1]
    cut = -1
    for m in _SOFT_BREAK.finditer(window):
        end = m.start() + 1
        if 0 < end <= max_length:
            cut = end
    if cut <= 0:
        cut = max(window.rfind(" "), window.rfind("\n"), window.rfind("\t"))
    if cut <= 0:
        cut = max_length
    piece = buffer[:cut].rstrip()
    rest = buffer[cut:].lstrip()
    return piece, rest
