from __future__ import annotations


class RelayError(Exception):
    """Base class for companion-relay failures."""


class ConfigError(RelayError, ValueError):
    pass


class EndpointResolutionError(RelayError):
    """No candidate protocol validated against the configured base URL."""

    def __init__(self, message: str, *, attempted: list[str] | None = None) -> None:
        super().__init__(message)
        self.attempted = list(attempted or [])


class BackendRequestError(RelayError):
    """
    A chat call failed: transport error, non-2xx status or an unusable body.
    `status` is the HTTP status when one was received; `body` is a short snippet.
    """

    def __init__(self, message: str, *, status: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is not None and self.body:
            return f"{base} (HTTP {self.status}): {self.body}"
        if self.status is not None:
            return f"{base} (HTTP {self.status})"
        return base


class EndpointNotFoundError(BackendRequestError):
    """The resolved endpoint answered 404."""


class PipeDisabledError(RelayError):
    pass


class CancelledError(RelayError):
    """Caller-initiated abort. Not a request failure."""


def body_snippet(text: str | None, limit: int = 300) -> str:
    if not text:
        return ""
    text = text.strip()
    return text if len(text) <= limit else text[:limit] + "..."
