"""
Candidate wire protocols a backend base URL may speak, and their response shapes.

Candidates are plain data: each carries its own probe builder and validator.
Resolution tries them in table order.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, Field, ValidationError

from companion_relay.config import Settings
from companion_relay.errors import BackendRequestError, body_snippet

from .base import ChatMessage


class BackendKind(Enum):
    OPENAI_COMPATIBLE = "openai-compatible"
    NATIVE_CHAT = "native-chat"

    @property
    def streams(self) -> bool:
        return self is BackendKind.OPENAI_COMPATIBLE


# ----- response shapes -----


class WireMessage(BaseModel):
    role: str | None = None
    content: str | None = None


class Choice(BaseModel):
    message: WireMessage | None = None
    delta: WireMessage | None = None
    text: str | None = None  # legacy completions


class CompletionResponse(BaseModel):
    # OpenAI: choices[0].message.content (or .delta.content in a stream frame)
    choices: list[Choice] = Field(default_factory=list)


class NativeChatResponse(BaseModel):
    # Ollama-style: {"message": {"role": "...", "content": "..."}, ...}
    message: WireMessage | None = None


def _openai_text(body: Any) -> str | None:
    try:
        resp = CompletionResponse.model_validate(body)
    except ValidationError:
        return None
    if not resp.choices:
        return None
    first = resp.choices[0]
    if first.message is not None and first.message.content is not None:
        return first.message.content
    if first.delta is not None and first.delta.content is not None:
        return first.delta.content
    return first.text


def _native_text(body: Any) -> str | None:
    try:
        resp = NativeChatResponse.model_validate(body)
    except ValidationError:
        resp = None
    if resp is not None and resp.message is not None and resp.message.content is not None:
        return resp.message.content
    # Some proxies wrap one shape inside the other.
    return _openai_text(body)


def extract_text(kind: BackendKind, body: Any) -> str:
    text = _openai_text(body) if kind is BackendKind.OPENAI_COMPATIBLE else _native_text(body)
    if text is None:
        raise BackendRequestError(
            f"Unrecognized {kind.value} response shape",
            body=body_snippet(str(body)),
        )
    return text


# ----- request bodies -----


def build_chat_body(settings: Settings, messages: list[ChatMessage], *, stream: bool) -> dict[str, Any]:
    body: dict[str, Any] = {
        "model": settings.model,
        "messages": [m.to_wire() for m in messages],
        "stream": stream,
        "temperature": settings.temperature,
    }
    if settings.max_tokens > 0:
        body["max_tokens"] = settings.max_tokens
    return body


def build_native_body(settings: Settings, messages: list[ChatMessage], *, stream: bool) -> dict[str, Any]:
    body: dict[str, Any] = {
        "model": settings.model,
        "messages": [m.to_wire() for m in messages],
        "stream": stream,
        "options": {"temperature": settings.temperature},
    }
    if settings.max_tokens > 0:
        body["options"]["num_predict"] = settings.max_tokens
    return body


def build_body(kind: BackendKind, settings: Settings, messages: list[ChatMessage], *, stream: bool) -> dict[str, Any]:
    if kind is BackendKind.NATIVE_CHAT:
        return build_native_body(settings, messages, stream=stream)
    return build_chat_body(settings, messages, stream=stream)


PROBE_MESSAGES = [ChatMessage("user", "ping")]


def _validate_openai(body: Any) -> bool:
    try:
        return bool(CompletionResponse.model_validate(body).choices)
    except ValidationError:
        return False


def _validate_native(body: Any) -> bool:
    try:
        resp = NativeChatResponse.model_validate(body)
    except ValidationError:
        return False
    return resp.message is not None and resp.message.content is not None


@dataclass(frozen=True)
class ProtocolCandidate:
    kind: BackendKind
    url_suffix: str
    build_probe_request: Callable[[Settings], dict[str, Any]]
    validate: Callable[[Any], bool]


PROBE_TABLE: tuple[ProtocolCandidate, ...] = (
    ProtocolCandidate(
        kind=BackendKind.OPENAI_COMPATIBLE,
        url_suffix="/v1/chat/completions",
        build_probe_request=lambda s: build_chat_body(s, PROBE_MESSAGES, stream=False),
        validate=_validate_openai,
    ),
    # Base URLs that already end in /v1 (e.g. https://api.openai.com/v1).
    ProtocolCandidate(
        kind=BackendKind.OPENAI_COMPATIBLE,
        url_suffix="/chat/completions",
        build_probe_request=lambda s: build_chat_body(s, PROBE_MESSAGES, stream=False),
        validate=_validate_openai,
    ),
    ProtocolCandidate(
        kind=BackendKind.NATIVE_CHAT,
        url_suffix="/api/chat",
        build_probe_request=lambda s: build_native_body(s, PROBE_MESSAGES, stream=False),
        validate=_validate_native,
    ),
)
