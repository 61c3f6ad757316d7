from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Request, Response
from loguru import logger

from intake.app.composition import NothingToMatchError
from intake.app.core import SERVICE_NAME
from intake.app.domain.extraction_service import ExtractionError
from intake.app.routers.utils import decode_upload, get_dependencies, resolve_queue
from intake.app.schemas.queue import (
    ItemAcceptedResponse,
    ItemCreateRequest,
    ItemResponse,
    MatchResponse,
    StatsPayload,
    StatsResponse,
)


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def _json(status_code: int, model: Any) -> Response:
    return Response(
        status_code=status_code,
        media_type="application/json",
        content=model.model_dump_json(),
    )


queue_router = APIRouter(prefix="/queues", tags=["Queue"])


@queue_router.get(
    "/stats",
    summary="Queue statistics",
    description="Counts of total, pending, active, complete and errored items per queue and combined.",
    responses={200: {"description": "Current counts."}, 503: {"description": "Queues not available."}},
)
async def get_stats(request: Request) -> Response:
    deps = get_dependencies(request)
    if deps is None:
        return Response(status_code=503, content="Queue not available")
    queues = deps.queues
    return _json(
        200,
        StatsResponse(
            paused=any(queue.is_paused for queue in queues.values()),
            combined=StatsPayload(**deps.combined_stats().to_dict()),
            queues={kind: StatsPayload(**queue.stats.to_dict()) for kind, queue in queues.items()},
        ),
    )


@queue_router.post(
    "/pause",
    summary="Pause all queues",
    description="No new items are dispatched until resumed. Items already being processed run to completion.",
    status_code=204,
)
async def pause(request: Request) -> Response:
    deps = get_dependencies(request)
    if deps is None:
        return Response(status_code=503, content="Queue not available")
    deps.pause_all()
    return Response(status_code=204)


@queue_router.post("/resume", summary="Resume all queues", status_code=204)
async def resume(request: Request) -> Response:
    deps = get_dependencies(request)
    if deps is None:
        return Response(status_code=503, content="Queue not available")
    deps.resume_all()
    return Response(status_code=204)


@queue_router.delete(
    "",
    summary="Clear all queues",
    description="Drops every item and stored result. In-flight extraction calls are not interrupted.",
    status_code=204,
)
async def clear(request: Request) -> Response:
    deps = get_dependencies(request)
    if deps is None:
        return Response(status_code=503, content="Queue not available")
    deps.clear_all()
    return Response(status_code=204)


@queue_router.post(
    "/{kind}/items",
    summary="Enqueue a file for extraction",
    description="Accepts a base64-encoded file and queues it on the receipts or statements queue. Returns 202 immediately; processing happens in the background.",
    responses={
        202: {"description": "File accepted and queued."},
        404: {"description": "Unknown queue."},
        409: {"description": "An item with this id is already queued."},
        422: {"description": "Invalid request body or content is not valid base64."},
        503: {"description": "Queues not available."},
    },
)
async def add_item(request: Request, kind: str, body: ItemCreateRequest) -> Response:
    queue, error = resolve_queue(request, kind)
    if error is not None:
        return error
    upload = decode_upload(body)
    if upload is None:
        return Response(status_code=422, content="content_base64 is not valid base64")

    item_id = body.id or str(uuid.uuid4())
    if not queue.add_to_queue(item_id, upload):
        return Response(status_code=409, content=f"Item already queued: {item_id}")
    _log("item_accepted", queue=kind, item_id=item_id, name=upload.name)
    return _json(202, ItemAcceptedResponse(id=item_id))


@queue_router.get(
    "/{kind}/items/{item_id}",
    summary="Item status",
    description="Returns the item's status, retry count, last error and, once complete, the extracted transactions.",
    responses={200: {"description": "Item found."}, 404: {"description": "Unknown queue or item."}},
)
async def get_item(request: Request, kind: str, item_id: str) -> Response:
    queue, error = resolve_queue(request, kind)
    if error is not None:
        return error
    item = queue.get_item_status(item_id)
    if item is None:
        return Response(status_code=404, content="Item not found")
    deps = request.app.state.dependencies
    return _json(
        200,
        ItemResponse(
            id=item.id,
            status=item.status.value,
            retries=item.retries,
            error=item.error,
            result=deps.result(kind, item.id),
        ),
    )


@queue_router.delete(
    "/{kind}/items/{item_id}",
    summary="Remove an item",
    description="Removes the item whatever its status. Removing an unknown item is not an error.",
    status_code=204,
)
async def remove_item(request: Request, kind: str, item_id: str) -> Response:
    queue, error = resolve_queue(request, kind)
    if error is not None:
        return error
    queue.remove_from_queue(item_id)
    request.app.state.dependencies.forget(kind, item_id)
    return Response(status_code=204)


@queue_router.post(
    "/{kind}/items/{item_id}/retry",
    summary="Retry a failed item",
    description="Resets the retry count and puts a failed item back into the queue.",
    responses={
        202: {"description": "Item re-queued."},
        404: {"description": "Unknown queue or item."},
        409: {"description": "Item is being processed or already complete."},
    },
)
async def retry_item(request: Request, kind: str, item_id: str) -> Response:
    queue, error = resolve_queue(request, kind)
    if error is not None:
        return error
    if queue.get_item_status(item_id) is None:
        return Response(status_code=404, content="Item not found")
    if not queue.retry_item(item_id):
        return Response(status_code=409, content="Item cannot be retried in its current state")
    return _json(202, ItemAcceptedResponse(id=item_id))


@queue_router.post(
    "/match",
    summary="Match receipts against statements",
    description="Sends the transactions of every completed receipt and statement to the matching service.",
    responses={
        200: {"description": "Matching results."},
        409: {"description": "No completed receipts or no completed statements."},
        502: {"description": "Matching service failed."},
        503: {"description": "Queues not available."},
    },
)
async def match(request: Request) -> Response:
    deps = get_dependencies(request)
    if deps is None:
        return Response(status_code=503, content="Queue not available")
    try:
        results = await deps.match_completed()
    except NothingToMatchError as e:
        return Response(status_code=409, content=str(e))
    except ExtractionError as e:
        logger.warning("match request failed: {}", e)
        return Response(status_code=502, content=str(e))
    _log("match_completed")
    return _json(200, MatchResponse(results=results))
