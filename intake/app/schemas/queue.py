from typing import Any

from pydantic import BaseModel, Field

from intake.app.constants import ItemStatus


class ItemCreateRequest(BaseModel):
    id: str | None = None
    name: str = Field(..., min_length=1)
    media_type: str | None = None
    content_base64: str = Field(..., min_length=1)


class ItemAcceptedResponse(BaseModel):
    id: str
    status: str = ItemStatus.PENDING.value


class ItemResponse(BaseModel):
    id: str
    status: str
    retries: int
    error: str | None = None
    result: Any = None


class StatsPayload(BaseModel):
    total: int
    pending: int
    active: int
    complete: int
    error: int


class StatsResponse(BaseModel):
    paused: bool
    combined: StatsPayload
    queues: dict[str, StatsPayload]


class MatchResponse(BaseModel):
    results: dict[str, Any]
