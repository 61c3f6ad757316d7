"""Item lifecycle: legal status transitions.

pending -> uploading -> analyzing -> extracting -> complete.
Any active status may fall back to pending (retry) or error (retries exhausted).
error -> pending only through an explicit retry; complete is terminal.
"""
from __future__ import annotations

from intake.app.constants import ItemStatus

ACTIVE_STATUSES = frozenset(
    {ItemStatus.UPLOADING, ItemStatus.ANALYZING, ItemStatus.EXTRACTING}
)
TERMINAL_STATUSES = frozenset({ItemStatus.COMPLETE, ItemStatus.ERROR})

_TRANSITIONS: dict[ItemStatus, frozenset[ItemStatus]] = {
    ItemStatus.PENDING: frozenset({ItemStatus.UPLOADING, ItemStatus.PENDING}),
    ItemStatus.UPLOADING: frozenset({ItemStatus.ANALYZING, ItemStatus.PENDING, ItemStatus.ERROR}),
    ItemStatus.ANALYZING: frozenset({ItemStatus.EXTRACTING, ItemStatus.PENDING, ItemStatus.ERROR}),
    ItemStatus.EXTRACTING: frozenset({ItemStatus.COMPLETE, ItemStatus.PENDING, ItemStatus.ERROR}),
    ItemStatus.COMPLETE: frozenset(),
    ItemStatus.ERROR: frozenset({ItemStatus.PENDING}),
}


class InvalidTransitionError(Exception):
    """Raised when an item is moved to a status its current status cannot reach."""

    def __init__(self, item_id: str, current: ItemStatus, target: ItemStatus) -> None:
        super().__init__(f"item {item_id!r}: illegal transition {current.value} -> {target.value}")
        self.item_id = item_id
        self.current = current
        self.target = target


def is_active(status: ItemStatus) -> bool:
    return status in ACTIVE_STATUSES


def is_terminal(status: ItemStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: ItemStatus, target: ItemStatus) -> bool:
    return target in _TRANSITIONS[current]


def ensure_transition(item_id: str, current: ItemStatus, target: ItemStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(item_id, current, target)
