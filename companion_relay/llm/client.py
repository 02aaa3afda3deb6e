from __future__ import annotations

import logging
import threading
from typing import Callable, Iterable, Iterator, Sequence, TypeVar

import httpx
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt

from companion_relay.config import Settings
from companion_relay.errors import (
    BackendRequestError,
    CancelledError,
    EndpointNotFoundError,
    EndpointResolutionError,
    body_snippet,
)

from .base import ChatMessage
from .persona import PersonaManager
from .protocols import PROBE_MESSAGES, build_body, extract_text
from .resolver import BackendResolver, ResolvedEndpoint, request_headers
from .stream import iter_stream_fragments

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _check_cancel(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise CancelledError("Chat request cancelled")


def _raise_for_status(r: httpx.Response) -> None:
    if not r.is_error:
        return
    try:
        # Streamed responses have not read their body yet.
        text = r.read().decode("utf-8", "replace")
    except httpx.HTTPError:
        text = ""
    if r.status_code == 404:
        raise EndpointNotFoundError(f"Endpoint {r.request.url} not found", status=404, body=body_snippet(text))
    raise BackendRequestError(f"Backend error from {r.request.url}", status=r.status_code, body=body_snippet(text))


class ChatClient:
    """
    Chat client over whichever protocol the base URL turns out to speak.

    The endpoint is discovered lazily on first use and cached by the resolver.
    A cached endpoint that starts answering 404 is dropped and re-resolved once.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        persona: PersonaManager | None = None,
        resolver: BackendResolver | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.persona = persona or PersonaManager(settings)
        self.transport = transport
        self.resolver = resolver or BackendResolver(settings, transport=transport)

    # ----- request building -----

    def build_messages(self, history: Sequence[ChatMessage], new_input: str) -> list[ChatMessage]:
        take = max(2, self.settings.max_history_messages)
        msgs = [ChatMessage("system", self.persona.system_prompt())]
        msgs.extend(list(history)[-take:])
        if new_input and new_input.strip():
            msgs.append(ChatMessage("user", new_input))
        return msgs

    def _http(self) -> httpx.Client:
        return httpx.Client(timeout=self.settings.request_timeout_s, transport=self.transport)

    # ----- retry policy shared by once/stream -----

    def _drop_endpoint(self, retry_state: RetryCallState) -> None:
        logger.warning("Cached endpoint answered 404; re-resolving once")
        self.resolver.invalidate()

    def _with_endpoint_retry(self, call: Callable[[ResolvedEndpoint], T]) -> T:
        lost: list[EndpointNotFoundError] = []

        def drop(retry_state: RetryCallState) -> None:
            lost.append(retry_state.outcome.exception())
            self._drop_endpoint(retry_state)

        def attempt() -> T:
            try:
                endpoint = self.resolver.resolve()
            except EndpointResolutionError as e:
                if not lost:
                    raise
                # The endpoint went away and nothing replaced it: still a failed request.
                raise BackendRequestError(
                    f"Endpoint gone and re-resolution failed: {e}", status=404, body=lost[-1].body
                ) from e
            return call(endpoint)

        retrying = Retrying(
            reraise=True,
            stop=stop_after_attempt(2),
            retry=retry_if_exception_type(EndpointNotFoundError),
            before_sleep=drop,
        )
        return retrying(attempt)

    # ----- single request -----

    def _complete(
        self,
        client: httpx.Client,
        endpoint: ResolvedEndpoint,
        messages: list[ChatMessage],
        cancel: threading.Event | None,
    ) -> str:
        _check_cancel(cancel)
        payload = build_body(endpoint.kind, self.settings, messages, stream=False)
        try:
            r = client.post(endpoint.url, json=payload, headers=request_headers(self.settings))
        except httpx.HTTPError as e:
            raise BackendRequestError(f"Request to {endpoint.url} failed: {e}") from e
        _check_cancel(cancel)
        _raise_for_status(r)
        try:
            data = r.json()
        except ValueError as e:
            raise BackendRequestError(
                "Backend returned invalid JSON", status=r.status_code, body=body_snippet(r.text)
            ) from e
        return extract_text(endpoint.kind, data).strip()

    def chat_once(
        self,
        history: Sequence[ChatMessage],
        new_input: str,
        cancel: threading.Event | None = None,
    ) -> str:
        _check_cancel(cancel)
        messages = self.build_messages(history, new_input)
        with self._http() as client:
            return self._with_endpoint_retry(lambda ep: self._complete(client, ep, messages, cancel))

    # ----- streaming -----

    def _open_stream(
        self,
        client: httpx.Client,
        endpoint: ResolvedEndpoint,
        messages: list[ChatMessage],
        cancel: threading.Event | None,
    ) -> httpx.Response | str:
        if not endpoint.kind.streams:
            return self._complete(client, endpoint, messages, cancel)

        _check_cancel(cancel)
        headers = {**request_headers(self.settings), "Accept": "text/event-stream"}
        request = client.build_request(
            "POST",
            endpoint.url,
            json=build_body(endpoint.kind, self.settings, messages, stream=True),
            headers=headers,
        )
        try:
            response = client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise BackendRequestError(f"Request to {endpoint.url} failed: {e}") from e
        try:
            _raise_for_status(response)
        except BackendRequestError:
            response.close()
            raise
        return response

    def chat_stream(
        self,
        history: Sequence[ChatMessage],
        new_input: str,
        cancel: threading.Event | None = None,
    ) -> Iterator[str]:
        """
        Yield assistant text fragments as they arrive.

        Native-chat backends have no incremental form here: the whole reply is
        yielded as one fragment. Closing the generator closes the connection.
        """
        _check_cancel(cancel)
        messages = self.build_messages(history, new_input)
        with self._http() as client:
            opened = self._with_endpoint_retry(lambda ep: self._open_stream(client, ep, messages, cancel))
            if isinstance(opened, str):
                if opened:
                    yield opened
                return

            try:
                yield from iter_stream_fragments(_lines_until_cancelled(opened, cancel))
            except httpx.HTTPError as e:
                raise BackendRequestError(f"Stream from {opened.request.url} broke off: {e}") from e
            finally:
                opened.close()

    # ----- diagnostics -----

    def test_connection(self, cancel: threading.Event | None = None) -> tuple[bool, str]:
        """Best-effort: resolve and run one trivial turn. Only cancellation raises."""

        def probe(ep: ResolvedEndpoint) -> ResolvedEndpoint:
            self._complete(client, ep, list(PROBE_MESSAGES), cancel)
            return ep

        try:
            with self._http() as client:
                endpoint = self._with_endpoint_retry(probe)
        except (EndpointResolutionError, BackendRequestError) as e:
            return False, str(e)
        return True, f"{endpoint.kind.value} @ {endpoint.url}"


def _lines_until_cancelled(response: httpx.Response, cancel: threading.Event | None) -> Iterable[str]:
    for line in response.iter_lines():
        _check_cancel(cancel)
        yield line
