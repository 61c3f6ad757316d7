"""Composition root: build and lifecycle-manage concrete dependencies.

Composition may: import concrete classes, call factories, store interface types,
manage high-level lifecycle.
"""
from __future__ import annotations

from functools import partial
from typing import Any

from loguru import logger

from intake.app.application.processing_queue import ProcessingQueue
from intake.app.config.settings import Settings
from intake.app.constants import QUEUE_KIND, QUEUE_KINDS, ItemStatus
from intake.app.core import SERVICE_NAME
from intake.app.domain.extraction_service import ExtractionService
from intake.app.domain.models import QueueStats
from intake.app.infrastructure.http.factory import create_http_client
from intake.app.ports.http_client import AbstractHttpClient


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class NothingToMatchError(Exception):
    """Raised when there are no completed transactions on one side of a match."""


class WorkerDependencies:
    """Holds the extraction client and one processing queue per file kind."""

    def __init__(self, *, settings: Settings) -> None:
        self._settings = settings
        self._http_client: AbstractHttpClient | None = None
        self._extraction_service: ExtractionService | None = None
        self._queues: dict[str, ProcessingQueue] = {}
        self._results: dict[tuple[str, str], Any] = {}
        self._connected = False

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def ready(self) -> bool:
        return self._connected

    @property
    def extraction_service(self) -> ExtractionService:
        if self._extraction_service is None:
            raise RuntimeError("extraction_service is not initialized")
        return self._extraction_service

    @property
    def queues(self) -> dict[str, ProcessingQueue]:
        if not self._queues:
            raise RuntimeError("queues are not initialized")
        return dict(self._queues)

    def queue(self, kind: str) -> ProcessingQueue:
        if not self._queues:
            raise RuntimeError("queues are not initialized")
        try:
            return self._queues[kind]
        except KeyError:
            raise KeyError(f"unknown queue kind: {kind}") from None

    def result(self, kind: str, item_id: str) -> Any | None:
        return self._results.get((kind, item_id))

    async def connect(self) -> None:
        self._http_client = create_http_client(self._settings)
        default_headers: dict[str, str] | None = None
        if self._settings.extraction_user_agent:
            default_headers = {"User-Agent": self._settings.extraction_user_agent}

        self._extraction_service = ExtractionService(
            self._http_client,
            self._settings.extraction_base_url,
            connect_timeout_seconds=self._settings.extraction_connect_timeout_seconds,
            read_timeout_seconds=self._settings.extraction_read_timeout_seconds,
            default_headers=default_headers,
        )
        processors = {
            QUEUE_KIND.RECEIPTS: self._extraction_service.analyze_receipt,
            QUEUE_KIND.STATEMENTS: self._extraction_service.parse_statement,
        }
        options = self._settings.queue_options()
        self._queues = {
            kind: ProcessingQueue(
                processors[kind],
                on_item_complete=partial(self._store_result, kind),
                on_item_error=partial(self._drop_result, kind),
                name=kind,
                **options,
            )
            for kind in QUEUE_KINDS
        }
        self._connected = True
        _log("dependencies_connected", base_url=self._settings.extraction_base_url, **options)

    def _store_result(self, kind: str, item_id: str, result: Any) -> None:
        self._results[(kind, item_id)] = result

    def _drop_result(self, kind: str, item_id: str, error: Exception) -> None:
        self._results.pop((kind, item_id), None)

    def forget(self, kind: str, item_id: str) -> None:
        self._results.pop((kind, item_id), None)

    def completed_transactions(self, kind: str) -> list[Any]:
        """Transactions of every completed item of `kind`, in queue order."""
        transactions: list[Any] = []
        for item in self.queue(kind).items:
            if item.status == ItemStatus.COMPLETE:
                transactions.extend(self._results.get((kind, item.id)) or [])
        return transactions

    async def match_completed(self) -> dict[str, Any]:
        """Send completed receipt and statement transactions to the matcher.

        Raises NothingToMatchError when either side has no completed transactions.
        """
        receipts = self.completed_transactions(QUEUE_KIND.RECEIPTS)
        statements = self.completed_transactions(QUEUE_KIND.STATEMENTS)
        if not receipts or not statements:
            raise NothingToMatchError("at least one completed receipt and one completed statement are required")
        _log("match_requested", receipts=len(receipts), statements=len(statements))
        return await self.extraction_service.match_transactions(receipts, statements)

    def combined_stats(self) -> QueueStats:
        total = QueueStats()
        for queue in self._queues.values():
            total = total + queue.stats
        return total

    def pause_all(self) -> None:
        for queue in self._queues.values():
            queue.pause()

    def resume_all(self) -> None:
        for queue in self._queues.values():
            queue.resume()

    def clear_all(self) -> None:
        for queue in self._queues.values():
            queue.clear_queue()
        self._results.clear()

    async def join_all(self) -> None:
        for queue in self._queues.values():
            await queue.join()

    async def close(self) -> None:
        for queue in self._queues.values():
            try:
                await queue.close()
            except Exception as exc:
                logger.warning("queue {} close failed: {}", queue.name, exc)
        self._queues = {}

        if self._http_client is not None:
            try:
                await self._http_client.close()
            except Exception as exc:
                logger.warning("http client close failed: {}", exc)
            self._http_client = None

        self._extraction_service = None
        self._connected = False


def create_worker_dependencies(settings: Settings | None = None) -> WorkerDependencies:
    return WorkerDependencies(settings=settings or Settings())
