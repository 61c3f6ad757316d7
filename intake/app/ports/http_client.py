"""HTTP client port: contract for posting JSON to the extraction service.

Domain code depends on this port; infrastructure (e.g. httpx) implements it.
Keeps domain free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


class HttpClientError(Exception):
    """Base for HTTP client failures (network, protocol, etc.)."""


class HttpClientTimeoutError(HttpClientError):
    """Raised when the request times out."""


@runtime_checkable
class HttpResponse(Protocol):
    """Minimal read-only view of an HTTP response."""

    @property
    def status_code(self) -> int: ...

    @property
    def text(self) -> str: ...

    def json(self) -> Any: ...


@dataclass(frozen=True)
class RequestTimeout:
    """Connect and read timeouts in seconds."""

    connect_seconds: float
    read_seconds: float


@runtime_checkable
class AbstractHttpClient(Protocol):
    """Port: perform JSON POST requests. Implementations live in infrastructure."""

    async def post_json(
        self,
        url: str,
        payload: dict[str, Any],
        *,
        timeout: RequestTimeout,
        headers: dict[str, str] | None = None,
    ) -> HttpResponse:
        """POST payload as JSON; raise HttpClientTimeoutError or HttpClientError on transport failure.

        Non-2xx responses are returned, not raised.
        """
        ...

    async def close(self) -> None:
        """Release resources (e.g. connection pool). No-op allowed if nothing to close."""
        ...
