"""Free appointment-slot suggestions from Google freeBusy data."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cardsync.calendar.client import GoogleCalendarClient, parse_google_datetime
from cardsync.calendar.models import Slot, SlotSuggestions
from cardsync.calendar.payload import parse_time_label
from cardsync.calendar.resolver import CalendarResolver

logger = logging.getLogger(__name__)

SLOT_STEP_MINUTES = 30
DEFAULT_WORKDAY_START = "07:00"
DEFAULT_WORKDAY_END = "17:30"
DEFAULT_TOP = 3
# ISO weekdays, Monday=1 .. Sunday=7.
DEFAULT_BUSINESS_DAYS = (1, 2, 3, 4, 5)

MIN_DURATION_MIN, MAX_DURATION_MIN = 15, 480
MIN_TOP, MAX_TOP = 1, 10
MIN_WINDOW_DAYS, MAX_WINDOW_DAYS = 3, 31


def _clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(upper, value))


def _coerce_zoneinfo(timezone: str) -> ZoneInfo | tzinfo:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def _minutes_of(label: str, fallback: str) -> int:
    parsed = parse_time_label(label) or parse_time_label(fallback)
    assert parsed is not None
    hour, minute = parsed
    return hour * 60 + minute


class SlotSuggester:
    """Finds the earliest free windows in the working calendar.

    One ``POST /freeBusy`` covers the whole window; candidates are then
    checked against the busy intervals in memory.
    """

    def __init__(
        self,
        client: GoogleCalendarClient,
        resolver: CalendarResolver,
        *,
        default_timezone: str,
        default_duration_min: int,
        default_window_days: int,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client = client
        self._resolver = resolver
        self._default_timezone = default_timezone
        self._default_duration_min = default_duration_min
        self._default_window_days = default_window_days
        self._clock = clock or (lambda: datetime.now(UTC))

    async def suggest(
        self,
        *,
        timezone: str | None = None,
        workday_start: str = DEFAULT_WORKDAY_START,
        workday_end: str = DEFAULT_WORKDAY_END,
        duration_min: int | None = None,
        top: int = DEFAULT_TOP,
        business_days: Sequence[int] | None = None,
        window_days: int | None = None,
        from_date: date | None = None,
    ) -> SlotSuggestions:
        timezone = timezone or self._default_timezone
        zone = _coerce_zoneinfo(timezone)
        duration = _clamp(int(duration_min or self._default_duration_min), MIN_DURATION_MIN, MAX_DURATION_MIN)
        top = _clamp(int(top), MIN_TOP, MAX_TOP)
        window = _clamp(int(window_days or self._default_window_days), MIN_WINDOW_DAYS, MAX_WINDOW_DAYS)
        allowed_days = {day for day in (business_days or ()) if 1 <= day <= 7} or set(
            DEFAULT_BUSINESS_DAYS
        )

        calendar_id = await self._resolver.resolve(create_if_missing=True)

        now = self._clock()
        base_day = from_date or now.astimezone(zone).date()
        range_start = datetime.combine(base_day, time.min, tzinfo=zone)
        range_end = datetime.combine(base_day + timedelta(days=window + 1), time.min, tzinfo=zone)

        busy_windows = await self._client.free_busy(
            calendar_id,
            time_min=range_start,
            time_max=range_end,
            timezone=timezone,
        )
        busy = _parse_busy_windows(busy_windows)

        day_start = _minutes_of(workday_start, DEFAULT_WORKDAY_START)
        day_end = _minutes_of(workday_end, DEFAULT_WORKDAY_END)
        slot_length = timedelta(minutes=duration)

        slots: list[Slot] = []
        for offset in range(window + 1):
            day = base_day + timedelta(days=offset)
            if day.isoweekday() not in allowed_days:
                continue
            minute = day_start
            while minute + duration <= day_end:
                start = datetime.combine(
                    day, time(minute // 60, minute % 60), tzinfo=zone
                )
                end = start + slot_length
                minute += SLOT_STEP_MINUTES
                if start < now:
                    continue
                if any(start < busy_end and end > busy_start for busy_start, busy_end in busy):
                    continue
                time_label = start.strftime("%H:%M")
                slots.append(
                    Slot(
                        start=start,
                        end=end,
                        date=day.isoformat(),
                        time_label=time_label,
                        label=f"{day.isoformat()} {time_label}",
                    )
                )
                if len(slots) >= top:
                    return self._result(calendar_id, timezone, duration, window, slots)

        logger.debug("Found %d free slot(s) in a %d-day window", len(slots), window)
        return self._result(calendar_id, timezone, duration, window, slots)

    @staticmethod
    def _result(
        calendar_id: str,
        timezone: str,
        duration: int,
        window: int,
        slots: list[Slot],
    ) -> SlotSuggestions:
        return SlotSuggestions(
            calendar_id=calendar_id,
            timezone=timezone,
            duration_min=duration,
            window_days=window,
            slots=slots,
        )


def _parse_busy_windows(windows: list[dict[str, object]]) -> list[tuple[datetime, datetime]]:
    parsed: list[tuple[datetime, datetime]] = []
    for window in windows:
        start_raw = window.get("start")
        end_raw = window.get("end")
        if not isinstance(start_raw, str) or not isinstance(end_raw, str):
            continue
        try:
            parsed.append((parse_google_datetime(start_raw), parse_google_datetime(end_raw)))
        except ValueError:
            logger.debug("Skipping unparseable busy window %r", window)
    return parsed
