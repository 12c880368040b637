from __future__ import annotations

import asyncio
import logging
import random

from opentelemetry import trace

from app.core.config import Settings
from app.services.reclaimer import StuckJobReclaimer
from app.services.store import JobStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_stuck_job_sweeper(store: JobStore, settings: Settings, *, max_backoff_seconds: float = 300.0) -> None:
    """Reclaim stale jobs every `stuck_job_sweep_interval_seconds` until cancelled."""

    interval = settings.stuck_job_sweep_interval_seconds
    reclaimer = StuckJobReclaimer(store, settings)
    backoff = interval

    while True:
        try:
            with tracer.start_as_current_span("sweeper.reclaim_stale") as span:
                result = await reclaimer.reclaim_stale()
                span.set_attribute("sweeper.cleared_jobs", result.cleared_jobs_count)
            if result.cleared_jobs_count:
                logger.info("sweeper reclaimed jobs: %s", result.cleared_job_ids)
            backoff = interval
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            jitter = random.uniform(0.0, 0.5)
            sleep_for = min(backoff * (2.0 + jitter), max_backoff_seconds)
            logger.exception("sweeper iteration failed: %s; retry in %.1fs", exc, sleep_for)
            await asyncio.sleep(sleep_for)
            backoff = sleep_for


def start_stuck_job_sweeper(store: JobStore, settings: Settings) -> asyncio.Task[None] | None:
    if settings.stuck_job_sweep_interval_seconds <= 0:
        return None
    logger.info(
        "starting stuck-job sweeper interval=%ss stale_after=%ss",
        settings.stuck_job_sweep_interval_seconds,
        settings.stuck_job_stale_after_seconds,
    )
    return asyncio.create_task(run_stuck_job_sweeper(store, settings), name="stuck-job-sweeper")


async def stop_stuck_job_sweeper(task: asyncio.Task[None] | None) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
