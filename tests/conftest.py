"""Shared fixtures for the cardsync test suite.

Every test that talks to "Google" goes through :class:`FakeGoogleCalendar`
via ``httpx.MockTransport``; nothing leaves the process.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest

from cardsync.calendar.client import GoogleCalendarClient, GoogleOAuthCredentials
from cardsync.calendar.service import CalendarSyncService
from cardsync.config import AppConfig, build_config
from cardsync.testing import FakeGoogleCalendar

CALENDAR_NAME = "Service Appointments"
# A Monday morning in Vienna (09:00 local, UTC+1).
FIXED_NOW = datetime(2026, 2, 16, 8, 0, tzinfo=UTC)


class FrozenClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def make_config(
    *,
    google: dict[str, Any] | None = None,
    sync: dict[str, Any] | None = None,
    automation: dict[str, Any] | None = None,
    state: dict[str, Any] | None = None,
) -> AppConfig:
    """Build a configured ``AppConfig``; sections are merged over sane test defaults."""
    google_section = {
        "enabled": True,
        "client_id": "client-id",
        "client_secret": "client-secret",
        "refresh_token": "refresh-token",
        "calendar_name": CALENDAR_NAME,
        "timezone": "Europe/Vienna",
        "event_duration_min": 90,
    }
    google_section.update(google or {})
    return build_config(
        {
            "google": google_section,
            "sync": sync or {},
            "automation": automation or {},
            "state": state or {},
        }
    )


def make_record(record_id: str = "card-1", **overrides: Any) -> dict[str, Any]:
    """Raw record dict for an eligible appointment."""
    raw: dict[str, Any] = {
        "id": record_id,
        "title": "Boiler service",
        "address": "Hauptstrasse 1",
        "location": "Vienna",
        "phone": "+43 1 234567",
        "status": "Scheduled",
        "date": "2026-02-19",
        "timeLabel": "15:00",
        "sources": ["telegram"],
        "comments": ["Bring spare parts"],
    }
    raw.update(overrides)
    return raw


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(FIXED_NOW)


@pytest.fixture
def fake_google() -> FakeGoogleCalendar:
    return FakeGoogleCalendar()


@pytest.fixture
def calendar_id(fake_google: FakeGoogleCalendar) -> str:
    return fake_google.add_calendar(CALENDAR_NAME)


@pytest.fixture
async def http_client(fake_google: FakeGoogleCalendar):
    async with httpx.AsyncClient(transport=fake_google.transport()) as client:
        yield client


@pytest.fixture
def credentials() -> GoogleOAuthCredentials:
    return GoogleOAuthCredentials(
        client_id="client-id",
        client_secret="client-secret",
        refresh_token="refresh-token",
    )


@pytest.fixture
def calendar_client(
    credentials: GoogleOAuthCredentials,
    http_client: httpx.AsyncClient,
    clock: FrozenClock,
) -> GoogleCalendarClient:
    return GoogleCalendarClient(credentials, http_client, clock=clock)


@pytest.fixture
def app_config() -> AppConfig:
    return make_config()


@pytest.fixture
async def service(
    app_config: AppConfig,
    http_client: httpx.AsyncClient,
    clock: FrozenClock,
    calendar_id: str,
):
    svc = CalendarSyncService(app_config, http_client=http_client, clock=clock)
    yield svc
    await svc.aclose()
