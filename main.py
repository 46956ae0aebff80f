"""FastAPI application entry point (status surface of the sync daemon).

Wires together: middleware, exception handlers, routes, metrics.
The lifespan runs the continuous LibreView → Dexcom Share sync as a
background task when credentials are configured.
"""

import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException

from glucose.adapters.factory import build_syncer
from glucose.api import router as glucose_router
from shared.config import settings
from shared.exceptions import ProblemDetailError
from shared.logging import configure_logging
from shared.metrics import create_metrics_app
from shared.middleware import (
    RequestIdMiddleware,
    http_exception_handler,
    problem_detail_handler,
)

logger = structlog.get_logger()


def _log_daemon_exit(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("sync_daemon_crashed", error=str(task.exception()))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    configure_logging(json_output=settings.log_json, level=settings.log_level)

    missing = settings.missing_credentials()
    if missing:
        logger.warning("sync_engine_disabled", missing=missing)
        app.state.syncer = None
        yield
        return

    syncer = build_syncer(settings)
    stop_event = asyncio.Event()
    app.state.syncer = syncer
    task = asyncio.create_task(syncer.run_continuously(stop_event))
    task.add_done_callback(_log_daemon_exit)
    logger.info("app_starting", source_region=settings.source_region or "global")
    try:
        yield
    finally:
        logger.info("app_shutting_down")
        stop_event.set()
        await asyncio.gather(task, return_exceptions=True)
        await syncer.aclose()


app = FastAPI(
    title="lib2dex status API",
    description=(
        "Status of the LibreView (LibreLinkUp) to Dexcom Share glucose sync: "
        "cycle counters, dedup window size and the virtual receiver serial."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestIdMiddleware)

# All errors emit application/problem+json (RFC 9457)
app.add_exception_handler(ProblemDetailError, problem_detail_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)

app.include_router(glucose_router)

metrics_app = create_metrics_app()
app.mount("/metrics", metrics_app)


@app.get("/health")
async def health():
    return {"status": "ok"}
