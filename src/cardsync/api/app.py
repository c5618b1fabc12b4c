"""cardsync HTTP API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that starts the daily resync scheduler and closes the
  calendar service on shutdown
- Liveness endpoint at GET /api/health
- The ``/api/google`` router bound to one ``CalendarSyncService``
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cardsync.api.middleware import register_error_handlers
from cardsync.api.routers.google import _get_service
from cardsync.api.routers.google import router as google_router
from cardsync.calendar.service import CalendarSyncService

logger = logging.getLogger(__name__)


def create_app(
    service: CalendarSyncService,
    cors_origins: list[str] | None = None,
    *,
    run_scheduler: bool = False,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    service:
        The process-wide calendar service every endpoint uses.
    cors_origins:
        Allowed CORS origins. Defaults to ``["http://localhost:5173"]``.
    run_scheduler:
        Start ``service.scheduler.run_forever()`` for the app's lifetime.
    """
    if cors_origins is None:
        cors_origins = ["http://localhost:5173"]

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        shutdown_event = asyncio.Event()
        scheduler_task: asyncio.Task | None = None
        if run_scheduler:
            scheduler_task = asyncio.create_task(
                service.scheduler.run_forever(shutdown_event),
                name="cardsync-daily-resync",
            )

        yield

        shutdown_event.set()
        if scheduler_task is not None:
            scheduler_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await scheduler_task
        await service.aclose()
        logger.info("Calendar service closed")

    app = FastAPI(
        title="cardsync API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(google_router)
    app.dependency_overrides[_get_service] = lambda: service
    app.state.service = service

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
