from __future__ import annotations

import base64
import binascii
from typing import Any

from fastapi import Request, Response
from loguru import logger

from intake.app.core import SERVICE_NAME
from intake.app.domain.models import UploadedFile
from intake.app.schemas.queue import ItemCreateRequest


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).warning("")


def get_dependencies(request: Request) -> Any | None:
    """Wired WorkerDependencies from app.state, or None when not ready."""
    deps = getattr(request.app.state, "dependencies", None)
    if deps is None or not deps.ready:
        _log("dependencies_not_ready", path=request.url.path)
        return None
    return deps


def resolve_queue(request: Request, kind: str) -> tuple[Any | None, Response | None]:
    """Return (queue, None) or (None, error response) for the queue named by `kind`."""
    deps = get_dependencies(request)
    if deps is None:
        return None, Response(status_code=503, content="Queue not available")
    try:
        return deps.queue(kind), None
    except KeyError:
        return None, Response(status_code=404, content=f"Unknown queue: {kind}")


def decode_upload(body: ItemCreateRequest) -> UploadedFile | None:
    try:
        content = base64.b64decode(body.content_base64, validate=True)
    except (binascii.Error, ValueError):
        return None
    return UploadedFile(name=body.name, content=content, media_type=body.media_type)


__all__ = [
    "get_dependencies",
    "resolve_queue",
    "decode_upload",
]
