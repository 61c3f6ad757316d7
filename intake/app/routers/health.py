from typing import Any

from fastapi import APIRouter, Request, Response
from loguru import logger

from intake.app.core import SERVICE_NAME

health_router = APIRouter(tags=["Health"])


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


@health_router.get(
    "/health/live",
    summary="Liveness probe",
    description="Returns 200 if the API process is running.",
    responses={200: {"description": "Service is alive."}},
)
async def live() -> dict:
    return {"status": "ok"}


@health_router.get(
    "/health/ready",
    summary="Readiness probe",
    description="Returns 200 only when the extraction client and processing queues are wired.",
    responses={
        200: {"description": "Queues are ready."},
        503: {"description": "Queues not initialized."},
    },
)
async def ready(request: Request) -> Response:
    deps = getattr(request.app.state, "dependencies", None)
    if deps is None:
        _log("components_not_initialized")
        return Response(status_code=503, content="Not ready")
    if not deps.ready:
        _log("queues_not_ready")
        return Response(status_code=503, content="Queues not ready")
    return Response(status_code=200, content="OK")
