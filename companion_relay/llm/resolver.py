from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from companion_relay.config import Settings
from companion_relay.errors import EndpointResolutionError

from .protocols import PROBE_TABLE, BackendKind, ProtocolCandidate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedEndpoint:
    kind: BackendKind
    url: str


def request_headers(settings: Settings) -> dict[str, str]:
    headers = {"Accept": "application/json"}
    if settings.api_key:
        headers["Authorization"] = f"Bearer {settings.api_key}"
    return headers


class BackendResolver:
    """
    Finds which candidate protocol the configured base URL speaks and caches it.

    The cache belongs to this instance and is not locked: two threads resolving
    at once may both probe, which is harmless since probes are idempotent.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        candidates: tuple[ProtocolCandidate, ...] = PROBE_TABLE,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.candidates = candidates
        self.transport = transport
        self._cached: ResolvedEndpoint | None = None

    @property
    def cached(self) -> ResolvedEndpoint | None:
        return self._cached

    def invalidate(self) -> None:
        if self._cached is not None:
            logger.info("Dropping cached endpoint %s", self._cached.url)
        self._cached = None

    def resolve(self) -> ResolvedEndpoint:
        if self._cached is not None:
            return self._cached

        base_url = self.settings.base_url.rstrip("/")
        headers = request_headers(self.settings)
        attempted: list[str] = []
        failures: list[str] = []

        with httpx.Client(timeout=self.settings.request_timeout_s, transport=self.transport) as client:
            for cand in self.candidates:
                url = base_url + cand.url_suffix
                attempted.append(cand.url_suffix)
                try:
                    r = client.post(url, json=cand.build_probe_request(self.settings), headers=headers)
                except httpx.HTTPError as e:
                    logger.warning("Probe %s failed: %s", url, e)
                    failures.append(f"{cand.url_suffix}: {type(e).__name__}")
                    continue

                if r.status_code == 404:
                    logger.debug("Probe %s: not found", url)
                    failures.append(f"{cand.url_suffix}: 404")
                    continue
                if r.is_error:
                    logger.warning("Probe %s answered HTTP %s", url, r.status_code)
                    failures.append(f"{cand.url_suffix}: HTTP {r.status_code}")
                    continue

                try:
                    body = r.json()
                except ValueError:
                    body = None
                if not cand.validate(body):
                    logger.warning("Probe %s answered, but not in %s shape", url, cand.kind.value)
                    failures.append(f"{cand.url_suffix}: unrecognized response")
                    continue

                self._cached = ResolvedEndpoint(kind=cand.kind, url=url)
                logger.info("Resolved backend: %s @ %s", cand.kind.value, url)
                return self._cached

        raise EndpointResolutionError(
            f"No compatible chat endpoint at {base_url} (tried {', '.join(attempted)}; {'; '.join(failures)})",
            attempted=attempted,
        )
