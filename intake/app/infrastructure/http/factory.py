"""HTTP client factory: selects implementation from config. Only place that imports concrete clients."""
from __future__ import annotations

import httpx

from intake.app.config.settings import Settings
from intake.app.infrastructure.http.httpx_client import HttpxHttpClient
from intake.app.ports.http_client import AbstractHttpClient


def create_http_client(settings: Settings) -> AbstractHttpClient:
    """Build an HTTP client from settings. Timeouts are applied per-request by the adapter."""
    backend = settings.http_client_backend.strip().lower()

    if backend == "httpx":
        return HttpxHttpClient(httpx.AsyncClient())

    raise ValueError(f"Unsupported http client backend: {backend}")
