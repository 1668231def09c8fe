from __future__ import annotations

FATAL_HTTP_STATUS = {401, 403, 404}
AUTH_HTTP_STATUS = {401, 403}


class ExtractionError(RuntimeError):
    """Base error for the extraction engine."""


class ConfigurationError(ExtractionError):
    """Missing credential, unknown connection or entity. Nothing is mutated."""


class RemoteHTTPError(ExtractionError):
    """Non-2xx answer from the remote API."""

    def __init__(self, status: int, body: str, url: str = "") -> None:
        self.status = status
        self.body = body
        self.url = url
        super().__init__(f"HTTP {status}: {body}")

    @property
    def fatal(self) -> bool:
        return self.status in FATAL_HTTP_STATUS

    @property
    def auth_failure(self) -> bool:
        return self.status in AUTH_HTTP_STATUS


class StoreWriteError(ExtractionError):
    """A local write (upsert) failed for one batch."""
