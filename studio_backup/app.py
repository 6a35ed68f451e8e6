"""
FastAPI application entry point for the backup service.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from studio_backup.config import get_settings
from studio_backup.routes import router
from studio_backup.worker import WorkerPool


def create_app() -> FastAPI:
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        pool = None
        if settings.in_process_workers > 0:
            pool = WorkerPool(
                settings.in_process_workers, settings.worker_poll_interval_seconds
            )
            pool.start()
        try:
            yield
        finally:
            if pool:
                pool.stop()

    app = FastAPI(title="Studio Backup", version="0.1.0", lifespan=lifespan)
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
