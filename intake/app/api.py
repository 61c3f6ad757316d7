from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from intake.app.composition import create_worker_dependencies
from intake.app.core import SERVICE_NAME
from intake.app.routers.health import health_router
from intake.app.routers.queues import queue_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.bind(service_name=SERVICE_NAME, event="api_starting").info("")
    deps = create_worker_dependencies()
    connected = False
    try:
        await deps.connect()
        connected = True
        app.state.settings = deps.settings
        app.state.dependencies = deps
        yield
    finally:
        logger.bind(service_name=SERVICE_NAME, event="api_stopping").info("")
        if connected:
            await deps.close()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Receipt Intake API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(health_router)
    app.include_router(queue_router)
    return app


app = create_app()
