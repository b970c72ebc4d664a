from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from recordshift.api.routes.cleanup import router as cleanup_router
from recordshift.api.routes.deletes import router as deletes_router
from recordshift.api.routes.health import router as health_router
from recordshift.api.routes.jobs import router as jobs_router
from recordshift.api.routes.migrations import router as migrations_router
from recordshift.core.config import get_settings
from recordshift.core.logging import configure_logging
from recordshift.db.init_db import initialize_database
from recordshift.jobs.lifecycle import run_startup_recovery
from recordshift.platform import RateLimitProvider, RecordPlatform
from recordshift.worker.pipeline import build_runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()
    runtime = app.state.runtime
    # Takes over SIGTERM/SIGINT from the server; a no-op off the main thread.
    runtime.coordinator.install_signal_handlers()
    run_startup_recovery(runtime.monitor)
    yield


def create_app(platform: RecordPlatform | None = None, rate_limits: RateLimitProvider | None = None) -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.runtime = build_runtime(platform, rate_limits, settings=settings)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(jobs_router, prefix="/api/v1")
    app.include_router(migrations_router, prefix="/api/v1")
    app.include_router(cleanup_router, prefix="/api/v1")
    app.include_router(deletes_router, prefix="/api/v1")
    return app
