"""Extraction service client: hands uploaded files to the external extraction API.

Uses the HTTP port (AbstractHttpClient); the client is built in the composition root.
The bound methods `analyze_receipt` and `parse_statement` are the processors the
receipt and statement queues supervise; `match_transactions` reconciles their
output. Any failure is raised as ExtractionError so the queue can record a readable
message and apply its retry policy.
"""
from __future__ import annotations

from typing import Any

from loguru import logger

from intake.app.core import SERVICE_NAME
from intake.app.domain.models import UploadedFile
from intake.app.ports.http_client import (
    AbstractHttpClient,
    HttpClientError,
    HttpClientTimeoutError,
    HttpResponse,
    RequestTimeout,
)

ANALYZE_RECEIPT_PATH = "/api/analyze-receipt"
PARSE_STATEMENT_PATH = "/api/parse-statement"
MATCH_TRANSACTIONS_PATH = "/api/match-transactions"

DEFAULT_IMAGE_MEDIA_TYPE = "image/jpeg"
PDF_MEDIA_TYPE = "application/pdf"


class ExtractionError(Exception):
    """Base error for extraction failures."""


class ExtractionTimeoutError(ExtractionError):
    """Raised when the extraction request times out."""


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def statement_media_type(file: UploadedFile) -> str:
    if file.media_type:
        return file.media_type
    return PDF_MEDIA_TYPE if file.name.lower().endswith(".pdf") else DEFAULT_IMAGE_MEDIA_TYPE


class ExtractionService:
    """Posts base64-encoded files to the extraction API and returns extracted transactions."""

    def __init__(
        self,
        client: AbstractHttpClient,
        base_url: str,
        connect_timeout_seconds: float,
        read_timeout_seconds: float,
        *,
        default_headers: dict[str, str] | None = None,
    ) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._timeout = RequestTimeout(
            connect_seconds=connect_timeout_seconds,
            read_seconds=read_timeout_seconds,
        )
        self._default_headers = dict(default_headers) if default_headers else {}

    async def analyze_receipt(self, file: UploadedFile) -> list[dict[str, Any]]:
        body = {
            "image": file.to_base64(),
            "mimeType": file.media_type or DEFAULT_IMAGE_MEDIA_TYPE,
        }
        data = await self._post(ANALYZE_RECEIPT_PATH, body, default_error="Failed to analyze receipt")
        return list(data.get("transactions") or [])

    async def parse_statement(self, file: UploadedFile) -> list[dict[str, Any]]:
        body = {
            "file": file.to_base64(),
            "mediaType": statement_media_type(file),
        }
        data = await self._post(PARSE_STATEMENT_PATH, body, default_error="Failed to parse statement")
        return list(data.get("transactions") or [])

    async def match_transactions(
        self,
        receipts: list[dict[str, Any]],
        statements: list[dict[str, Any]],
    ) -> dict[str, Any]:
        """Reconcile receipt transactions against statement transactions.

        Returns the service's `results` object (confirmed, discrepancies, unmatched).
        """
        body = {"receipts": list(receipts), "statements": list(statements)}
        data = await self._post(MATCH_TRANSACTIONS_PATH, body, default_error="Failed to match transactions")
        return dict(data.get("results") or {})

    async def _post(self, path: str, body: dict[str, Any], *, default_error: str) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        _log("extraction_request", url=url)
        try:
            response = await self._client.post_json(
                url,
                body,
                timeout=self._timeout,
                headers=self._default_headers or None,
            )
        except HttpClientTimeoutError as exc:
            raise ExtractionTimeoutError(str(exc)) from exc
        except HttpClientError as exc:
            raise ExtractionError(str(exc)) from exc

        data = _json_body(response)
        if not 200 <= response.status_code < 300:
            message = data.get("error") if data is not None else None
            logger.warning("extraction request to {} returned {}", url, response.status_code)
            raise ExtractionError(str(message or default_error))
        if data is None:
            raise ExtractionError(f"{default_error}: response is not a JSON object")
        if data.get("success") is False:
            raise ExtractionError(str(data.get("error") or default_error))
        return data


def _json_body(response: HttpResponse) -> dict[str, Any] | None:
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None
