"""Tests for free-slot suggestions."""

from __future__ import annotations

from datetime import date, datetime
from zoneinfo import ZoneInfo

import pytest

from cardsync.calendar.resolver import CalendarResolver
from cardsync.calendar.slots import SlotSuggester

pytestmark = pytest.mark.unit

VIENNA = ZoneInfo("Europe/Vienna")


@pytest.fixture
def suggester(calendar_client, app_config, clock) -> SlotSuggester:
    return SlotSuggester(
        calendar_client,
        CalendarResolver(app_config.google, calendar_client),
        default_timezone="Europe/Vienna",
        default_duration_min=90,
        default_window_days=14,
        clock=clock,
    )


class TestSuggest:
    async def test_past_starts_are_skipped(self, suggester, calendar_id):
        # The clock reads Monday 2026-02-16 09:00 Vienna time.
        result = await suggester.suggest(top=3)

        assert [slot.label for slot in result.slots] == [
            "2026-02-16 09:00",
            "2026-02-16 09:30",
            "2026-02-16 10:00",
        ]
        first = result.slots[0]
        assert first.start == datetime(2026, 2, 16, 9, 0, tzinfo=VIENNA)
        assert first.end == datetime(2026, 2, 16, 10, 30, tzinfo=VIENNA)
        assert first.time_label == "09:00"
        assert result.calendar_id == calendar_id
        assert result.duration_min == 90

    async def test_busy_windows_are_avoided(self, suggester, fake_google, calendar_id):
        # 09:00-12:00 Vienna is busy.
        fake_google.add_busy(calendar_id, "2026-02-17T08:00:00Z", "2026-02-17T11:00:00Z")

        result = await suggester.suggest(from_date=date(2026, 2, 17), top=2, duration_min=60)

        assert [slot.label for slot in result.slots] == ["2026-02-17 07:00", "2026-02-17 07:30"]
        later = await suggester.suggest(
            from_date=date(2026, 2, 17), top=4, duration_min=60, workday_start="08:00"
        )
        assert [slot.time_label for slot in later.slots] == ["08:00", "12:00", "12:30", "13:00"]

    async def test_weekends_are_skipped_by_default(self, suggester, calendar_id):
        # Saturday; the first business day is Monday the 23rd.
        result = await suggester.suggest(from_date=date(2026, 2, 21), top=1)
        assert result.slots[0].date == "2026-02-23"

    async def test_custom_business_days(self, suggester, calendar_id):
        result = await suggester.suggest(from_date=date(2026, 2, 21), top=1, business_days=[6])
        assert result.slots[0].label == "2026-02-21 07:00"

    async def test_last_slot_ends_by_workday_end(self, suggester, calendar_id):
        result = await suggester.suggest(
            from_date=date(2026, 2, 17),
            top=10,
            duration_min=120,
            workday_start="15:00",
            workday_end="17:30",
        )
        labels = [slot.label for slot in result.slots]
        assert labels[:2] == ["2026-02-17 15:00", "2026-02-17 15:30"]
        assert "2026-02-17 16:00" not in labels

    async def test_options_are_clamped(self, suggester, calendar_id):
        result = await suggester.suggest(top=50, duration_min=5, window_days=365)
        assert len(result.slots) == 10
        assert result.duration_min == 15
        assert result.window_days == 31

    async def test_single_free_busy_request(self, suggester, fake_google, calendar_id):
        await suggester.suggest(from_date=date(2026, 2, 17), window_days=3)
        free_busy = [request for request in fake_google.requests if request.path == "/freeBusy"]
        assert len(free_busy) == 1
        body = free_busy[0].body
        assert body["timeMin"] == "2026-02-16T23:00:00Z"
        assert body["timeMax"] == "2026-02-20T23:00:00Z"
        assert body["timeZone"] == "Europe/Vienna"

    async def test_unknown_timezone_falls_back_to_utc(self, suggester, calendar_id):
        result = await suggester.suggest(timezone="Mars/Olympus", from_date=date(2026, 2, 17), top=1)
        assert result.slots[0].start.utcoffset().total_seconds() == 0
        assert result.timezone == "Mars/Olympus"

    async def test_fully_booked_window_returns_no_slots(self, suggester, fake_google, calendar_id):
        fake_google.add_busy(calendar_id, "2026-02-16T00:00:00Z", "2026-03-31T00:00:00Z")
        result = await suggester.suggest()
        assert result.slots == []
