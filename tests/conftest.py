from __future__ import annotations

import json
from typing import Callable

import httpx
import pytest

from companion_relay.config import Settings


@pytest.fixture
def settings() -> Settings:
    return Settings(
        base_url="http://backend.test",
        api_key="sk-test",
        model="test-model",
        system_prompt_override="You are a test persona.",
        send_delay_ms=200,
        stream_flush_chars=40,
        stream_flush_ms=300,
    )


def openai_body(text: str) -> dict:
    return {"choices": [{"index": 0, "message": {"role": "assistant", "content": text}}]}


def native_body(text: str) -> dict:
    return {"model": "test-model", "message": {"role": "assistant", "content": text}, "done": True}


def sse_frame(text: str) -> str:
    return "data: " + json.dumps({"choices": [{"index": 0, "delta": {"content": text}}]})


class FakeBackend:
    """Routes requests by URL path; records every call for assertions."""

    def __init__(self, routes: dict[str, Callable[[httpx.Request], httpx.Response]]) -> None:
        self.routes = routes
        self.calls: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        fn = self.routes.get(request.url.path)
        if fn is None:
            return httpx.Response(404, text="not found")
        return fn(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def paths(self) -> list[str]:
        return [c.url.path for c in self.calls]

    def bodies(self) -> list[dict]:
        return [json.loads(c.content) for c in self.calls]
