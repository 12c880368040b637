from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from app.api.router import api_router
from app.core.config import get_settings
from app.core.telemetry import TelemetryRuntime, setup_api_telemetry, shutdown_api_telemetry
from app.jobs.sweeper import start_stuck_job_sweeper, stop_stuck_job_sweeper
from app.services.repository import get_job_store

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    store = get_job_store()
    sweeper = start_stuck_job_sweeper(store, settings)
    logger.info("%s started environment=%s store=%s", settings.app_name, settings.environment, settings.store_backend)
    try:
        yield
    finally:
        await stop_stuck_job_sweeper(sweeper)
        if _telemetry_runtime is not None:
            shutdown_api_telemetry(app, _telemetry_runtime)
        await store.close()
        get_job_store.cache_clear()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_api_telemetry(app, settings)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - started_at) * 1000.0
    level = logging.WARNING if response.status_code >= 500 else logging.INFO
    logger.log(
        level,
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


app.include_router(api_router)
