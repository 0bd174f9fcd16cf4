"""FastAPI application for approval links and agent status.

The production pipeline runs as a background job on APScheduler's
BackgroundScheduler inside the uvicorn process; the job thread hands
each run to the server's event loop with run_coroutine_threadsafe.

Usage:
    from concierge.web.app import create_app

    app = create_app()
    # uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from fastapi import FastAPI

from concierge.core.logging import get_logger

if TYPE_CHECKING:
    from apscheduler.schedulers.background import BackgroundScheduler

    from concierge.services import AppServices

logger = get_logger(__name__)

RUN_TIMEOUT_SECONDS = 600
FIRST_RUN_DELAY = timedelta(seconds=60)


def _start_scheduler(services: AppServices, loop: asyncio.AbstractEventLoop) -> BackgroundScheduler:
    from apscheduler.schedulers.background import BackgroundScheduler

    from concierge.config import get_config, reload_config_if_changed

    def _run_pipeline_sync() -> None:
        if reload_config_if_changed():
            services.pipeline.update_config(get_config())
        try:
            future = asyncio.run_coroutine_threadsafe(services.pipeline.run(), loop)
            result = future.result(timeout=RUN_TIMEOUT_SECONDS)
            if result.error:
                logger.warning("scheduled_run_error", run_id=result.run_id, error=result.error)
        except Exception as e:
            logger.error("scheduled_run_failed", error=str(e))

    interval = services.config.agent.interval_minutes
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        _run_pipeline_sync,
        "interval",
        minutes=interval,
        id="agent_run",
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now() + FIRST_RUN_DELAY,
    )
    scheduler.start()
    logger.info("scheduler_started", interval_minutes=interval)
    return scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load config, open the store, connect Graph and start the scheduler.

    A missing or invalid config still lets the app start so /api/health
    can report it; a failed Graph setup leaves the read-only endpoints
    working.
    """
    from concierge.config import get_config
    from concierge.core.errors import ConciergeError
    from concierge.services import build_services, open_store

    app.state.config = None
    app.state.store = None
    app.state.services = None
    app.state.scheduler = None

    try:
        config = get_config()
    except ConciergeError as e:
        logger.error("config_load_failed", error=str(e))
        yield
        return

    app.state.config = config
    store = await open_store(config)
    app.state.store = store

    try:
        services = await build_services(config, store=store)
    except ConciergeError as e:
        logger.error("services_init_failed", error=str(e))
        services = None
    app.state.services = services

    scheduler = None
    if services is not None:
        scheduler = _start_scheduler(services, asyncio.get_running_loop())
    app.state.scheduler = scheduler

    yield

    if scheduler is not None:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")


def create_app() -> FastAPI:
    from concierge.web.routes import APP_VERSION, api_router

    app = FastAPI(
        title="Family Concierge",
        description="Approval links and status for the family scheduling agent",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.include_router(api_router)
    return app
