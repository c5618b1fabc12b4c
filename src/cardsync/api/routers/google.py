"""Google Calendar endpoints: health, setup, sync, sync status and slot suggestions.

Provides a single router mounted at ``/api/google``. The service dependency
is a stub overridden by ``create_app`` (or by tests).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from cardsync.api.models import ApiResponse
from cardsync.api.models.google import (
    GoogleHealth,
    SetupRequest,
    SetupResult,
    SlotRequest,
    SyncRequest,
    SyncStatus,
)
from cardsync.calendar.models import SlotSuggestions, SyncRunResult
from cardsync.calendar.service import CalendarSyncService
from cardsync.config import SHARE_ROLES

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/google", tags=["google"])

API_ACTOR = "api"


def _get_service() -> CalendarSyncService:
    """Dependency stub -- overridden at app startup or in tests."""
    raise RuntimeError("CalendarSyncService not initialized")


@router.get("/health", response_model=ApiResponse[GoogleHealth])
async def google_health(
    service: CalendarSyncService = Depends(_get_service),
) -> ApiResponse[GoogleHealth]:
    """Report calendar reachability and the outcome of the last sync run."""
    calendar = await service.health()
    last_run = await service.last_run_state()
    return ApiResponse[GoogleHealth](
        data=GoogleHealth(
            calendar=calendar,
            last_run=last_run,
            sync_running=service.runner.is_running,
        )
    )


@router.post("/setup", response_model=ApiResponse[SetupResult])
async def google_setup(
    request: SetupRequest | None = None,
    service: CalendarSyncService = Depends(_get_service),
) -> ApiResponse[SetupResult]:
    """Resolve or create the working calendar and share it with the configured users."""
    request = request or SetupRequest()
    role = request.role if request.role in SHARE_ROLES else service.config.google.share_role
    shared_with = None
    if request.shared_with is not None:
        shared_with = [entry.strip() for entry in request.shared_with if entry.strip()]
    calendar = await service.setup(shared_with=shared_with, role=role)
    logger.info("Calendar setup completed for %s", calendar.calendar_id)
    return ApiResponse[SetupResult](
        data=SetupResult(calendar=calendar, role=role, shared_with=calendar.shared_with)
    )


@router.post("/sync", response_model=ApiResponse[SyncRunResult])
async def google_sync(
    request: SyncRequest,
    service: CalendarSyncService = Depends(_get_service),
) -> ApiResponse[SyncRunResult]:
    """Run (or join) a reconciliation over the posted records or the record store."""
    if request.records is None and service.record_store is None:
        raise ValueError("No records supplied and no record store is configured")
    result = await service.sync(
        request.records,
        force_resync=request.force_resync,
        persist_updates=request.persist,
        actor=API_ACTOR,
    )
    return ApiResponse[SyncRunResult](data=result)


@router.get("/sync/status", response_model=ApiResponse[SyncStatus])
async def google_sync_status(
    service: CalendarSyncService = Depends(_get_service),
) -> ApiResponse[SyncStatus]:
    last_run = await service.last_run_state()
    return ApiResponse[SyncStatus](
        data=SyncStatus(running=service.runner.is_running, last_run=last_run)
    )


@router.post("/slots", response_model=ApiResponse[SlotSuggestions])
async def google_slots(
    request: SlotRequest | None = None,
    service: CalendarSyncService = Depends(_get_service),
) -> ApiResponse[SlotSuggestions]:
    """Suggest the earliest free appointment windows."""
    request = request or SlotRequest()
    suggestions = await service.suggest_slots(
        timezone=request.timezone,
        workday_start=request.workday_start,
        workday_end=request.workday_end,
        duration_min=request.duration_min,
        top=request.top,
        business_days=request.business_days,
        window_days=request.window_days,
        from_date=request.from_date,
    )
    return ApiResponse[SlotSuggestions](data=suggestions)
