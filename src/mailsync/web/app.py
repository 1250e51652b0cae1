"""FastAPI application for the mail sync engine.

Creates the FastAPI app with a lifespan that builds the services, starts
the AI handoff worker and the recurring jobs, and tears them down again.

Scheduled jobs run via APScheduler's BackgroundScheduler in the same
process as uvicorn. The scheduler thread bridges to the async event loop
via run_coroutine_threadsafe.

Usage:
    from mailsync.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from mailsync import __version__
from mailsync.core.logging import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize services on startup, clean up on shutdown.

    On startup:
    1. Load config (with a watcher for hot-reload)
    2. Initialize the database and build services
    3. Start the AI handoff worker
    4. Start APScheduler

    On shutdown:
    - Stop APScheduler, stop the worker, checkpoint the WAL
    """
    from mailsync.config import ConfigWatcher
    from mailsync.core.errors import ConfigLoadError, ConfigValidationError, DatabaseError
    from mailsync.runtime import build_services
    from mailsync.scheduler import JobRunner

    app.state.services = None
    app.state.job_runner = None

    # 1. Load config
    try:
        watcher = ConfigWatcher.from_env()
    except (ConfigLoadError, ConfigValidationError) as e:
        logger.error("config_load_failed", error=str(e))
        # App still starts so /api/health can report the problem
        yield
        return

    # 2. Build services
    try:
        services = await build_services(watcher.config)
    except (DatabaseError, ConfigValidationError) as e:
        logger.error("services_init_failed", error=str(e))
        yield
        return

    app.state.services = services

    # 3. AI handoff worker
    if services.handoff is not None:
        services.handoff.start()

    # 4. Scheduler
    runner = JobRunner(services, asyncio.get_running_loop(), watcher=watcher)
    runner.start()
    app.state.job_runner = runner

    yield

    # Shutdown
    runner.shutdown()
    if services.handoff is not None:
        await services.handoff.stop()
    await services.store.checkpoint_wal()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance
    """
    from mailsync.web.routes import api_router

    app = FastAPI(
        title="Mail Sync Engine",
        description="Multi-provider mail sync, dedup and incremental learning",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(api_router)
    return app
