"""Queue-level constants shared across modules."""
from __future__ import annotations

from enum import Enum


class ItemStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    ANALYZING = "analyzing"
    EXTRACTING = "extracting"
    COMPLETE = "complete"
    ERROR = "error"


class QUEUE_KIND:
    RECEIPTS = "receipts"
    STATEMENTS = "statements"


QUEUE_KINDS = (QUEUE_KIND.RECEIPTS, QUEUE_KIND.STATEMENTS)
