"""Immutable, insertion-ordered collection of work items.

Every mutation returns a new store and leaves the receiver untouched, so a
reader holding a snapshot never observes a partially-applied change. Updates
and removals addressed to an unknown id return the same store unchanged.
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any

from intake.app.constants import ItemStatus
from intake.app.domain.models import WorkItem
from intake.app.domain.status_machine import ACTIVE_STATUSES, ensure_transition


class DuplicateItemError(Exception):
    """Raised when an id already present in the store is added again."""


@dataclass(frozen=True)
class ItemStore:
    items: tuple[WorkItem, ...] = ()

    def __len__(self) -> int:
        return len(self.items)

    def __contains__(self, item_id: object) -> bool:
        return any(item.id == item_id for item in self.items)

    def all(self) -> tuple[WorkItem, ...]:
        return self.items

    def find(self, item_id: str) -> WorkItem | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def add(self, item: WorkItem) -> "ItemStore":
        if item.id in self:
            raise DuplicateItemError(f"item {item.id!r} is already queued")
        return ItemStore(self.items + (item,))

    def remove(self, item_id: str) -> "ItemStore":
        if item_id not in self:
            return self
        return ItemStore(tuple(item for item in self.items if item.id != item_id))

    def update(self, item_id: str, **changes: Any) -> "ItemStore":
        """Replace fields of one item. A status change must be a legal transition."""
        current = self.find(item_id)
        if current is None:
            return self
        if "status" in changes:
            status = ItemStatus(changes["status"])
            ensure_transition(item_id, current.status, status)
            changes["status"] = status
            if status != ItemStatus.ERROR:
                changes["error"] = None
        replacement = dataclasses.replace(current, **changes)
        return ItemStore(
            tuple(replacement if item.id == item_id else item for item in self.items)
        )

    def update_status(self, item_id: str, status: ItemStatus, error: str | None = None) -> "ItemStore":
        return self.update(item_id, status=status, error=error)

    def count(self, status: ItemStatus) -> int:
        return sum(1 for item in self.items if item.status == status)

    def active_count(self) -> int:
        return sum(1 for item in self.items if item.status in ACTIVE_STATUSES)

    def pending(self) -> tuple[WorkItem, ...]:
        return tuple(item for item in self.items if item.status == ItemStatus.PENDING)

    def next_eligible(self, now: float) -> WorkItem | None:
        """First pending item (insertion order) whose backoff has elapsed."""
        for item in self.items:
            if item.status == ItemStatus.PENDING and item.eligible_at <= now:
                return item
        return None

    def next_eligible_at(self) -> float | None:
        """Earliest time any pending item becomes eligible, or None when nothing is pending."""
        times = [item.eligible_at for item in self.items if item.status == ItemStatus.PENDING]
        return min(times) if times else None

    def is_drained(self) -> bool:
        return not any(
            item.status == ItemStatus.PENDING or item.status in ACTIVE_STATUSES
            for item in self.items
        )
