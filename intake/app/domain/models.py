"""Domain models."""
from __future__ import annotations

import base64
import mimetypes
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from intake.app.constants import ItemStatus
from intake.app.domain.status_machine import ACTIVE_STATUSES


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WorkItem:
    """One unit of caller-supplied input awaiting processing (value object).

    ``eligible_at`` is event-loop time before which a backed-off item is not
    dispatched. ``lease`` identifies the dispatch that currently owns an active
    item; settlements carrying another lease are ignored.
    """

    id: str
    payload: Any
    status: ItemStatus = ItemStatus.PENDING
    retries: int = 0
    error: str | None = None
    eligible_at: float = 0.0
    lease: int | None = None
    enqueued_at: datetime = field(default_factory=_utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        """Caller-facing view; the payload is opaque and left out."""
        payload: dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "retries": self.retries,
            "enqueued_at": self.enqueued_at.isoformat(),
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class QueueStats:
    """Counts derived from a store snapshot. Never maintained incrementally."""

    total: int = 0
    pending: int = 0
    active: int = 0
    complete: int = 0
    error: int = 0

    @staticmethod
    def from_items(items: Iterable[WorkItem]) -> "QueueStats":
        total = pending = active = complete = error = 0
        for item in items:
            total += 1
            if item.status == ItemStatus.PENDING:
                pending += 1
            elif item.status in ACTIVE_STATUSES:
                active += 1
            elif item.status == ItemStatus.COMPLETE:
                complete += 1
            elif item.status == ItemStatus.ERROR:
                error += 1
        return QueueStats(total=total, pending=pending, active=active, complete=complete, error=error)

    def __add__(self, other: "QueueStats") -> "QueueStats":
        if not isinstance(other, QueueStats):
            return NotImplemented
        return QueueStats(
            total=self.total + other.total,
            pending=self.pending + other.pending,
            active=self.active + other.active,
            complete=self.complete + other.complete,
            error=self.error + other.error,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "pending": self.pending,
            "active": self.active,
            "complete": self.complete,
            "error": self.error,
        }


@dataclass(frozen=True)
class UploadedFile:
    """A user-supplied file handed to the extraction service."""

    name: str
    content: bytes
    media_type: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.content, (bytes, bytearray)):
            raise TypeError("file.content must be bytes")
        if not self.name:
            raise ValueError("file.name must be a non-empty str")

    @staticmethod
    def from_path(path: str | Path) -> "UploadedFile":
        path = Path(path)
        media_type, _ = mimetypes.guess_type(path.name)
        return UploadedFile(name=path.name, content=path.read_bytes(), media_type=media_type)

    def to_base64(self) -> str:
        return base64.b64encode(bytes(self.content)).decode("ascii")
