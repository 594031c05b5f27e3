"""FastAPI application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from platform_operator import __version__, db
from platform_operator.config import settings
from platform_operator.controller import Controller
from platform_operator.logging_config import setup_logging
from platform_operator.metrics import get_metrics, update_resource_metrics
from platform_operator.routers import router as v1_router
from platform_operator.utils.async_tasks import setup_asyncio_exception_handler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the controller on startup, stop it on shutdown."""
    setup_logging()
    setup_asyncio_exception_handler()
    logger.info(f"Starting platform operator {__version__}")

    controller = getattr(app.state, "controller", None)
    if controller is None:
        db.init_db()
        controller = app.state.controller = Controller()
    await controller.start()

    yield

    logger.info("Shutting down platform operator")
    await controller.stop()


app = FastAPI(title="Platform Deployment Operator", version=__version__, lifespan=lifespan)
app.include_router(v1_router, prefix="/api/v1")


@app.get("/healthz")
def healthz(request: Request):
    controller = getattr(request.app.state, "controller", None)
    if controller is None or not controller.healthy:
        failed = controller.failed_loops if controller else []
        return JSONResponse(status_code=503, content={"status": "unhealthy", "failed_loops": failed})
    return {"status": "ok", "queue_depth": len(controller.queue)}


@app.get("/metrics")
def metrics(request: Request):
    """Prometheus metrics in text exposition format."""
    controller = getattr(request.app.state, "controller", None)
    if controller is not None:
        update_resource_metrics(controller.store.list())
    content, content_type = get_metrics()
    return Response(content=content, media_type=content_type)


def run() -> None:
    uvicorn.run(
        "platform_operator.main:app",
        host=settings.listen_host,
        port=settings.listen_port,
        log_config=None,
    )


if __name__ == "__main__":
    run()
