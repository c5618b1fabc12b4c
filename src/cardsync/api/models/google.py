"""Request and response bodies for the ``/api/google`` endpoints."""

from __future__ import annotations

from datetime import date

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from cardsync.calendar.models import CalendarHealth, Record, SyncRunState


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SyncRequest(_CamelModel):
    """``POST /api/google/sync``; without ``records`` the attached record store is used."""

    records: list[Record] | None = None
    force_resync: bool = False
    persist: bool = False


class SetupRequest(_CamelModel):
    shared_with: list[str] | None = None
    role: str | None = None


class SlotRequest(_CamelModel):
    timezone: str | None = None
    workday_start: str = "07:00"
    workday_end: str = "17:30"
    duration_min: int | None = None
    top: int = 3
    business_days: list[int] | None = None
    window_days: int | None = None
    from_date: date | None = None


class GoogleHealth(_CamelModel):
    calendar: CalendarHealth
    last_run: SyncRunState | None = None
    sync_running: bool = False


class SyncStatus(_CamelModel):
    running: bool = False
    last_run: SyncRunState | None = None


class SetupResult(_CamelModel):
    calendar: CalendarHealth
    role: str
    shared_with: list[str] = Field(default_factory=list)
