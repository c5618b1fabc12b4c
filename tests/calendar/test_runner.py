"""Tests for single-flight sync runs, run history and the daily resync scheduler."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from cardsync.calendar.client import CalendarNotConfiguredError, RemoteApiError
from cardsync.calendar.models import GOOGLE_EVENT_ID, Record
from cardsync.calendar.records import MemoryRecordStore
from cardsync.calendar.runner import DailyResyncScheduler, NoRecordsError, SyncRunner
from cardsync.core.state import MemoryRunHistoryStore, RunHistoryStore
from conftest import make_record

pytestmark = pytest.mark.unit


class _BrokenHistory(RunHistoryStore):
    async def load(self):
        return None

    async def save(self, value):
        raise RuntimeError("database is down")


def _records(*ids: str) -> list[Record]:
    return [Record.model_validate(make_record(record_id)) for record_id in ids]


class TestSyncRunner:
    async def test_concurrent_callers_share_one_run(self, service, fake_google, calendar_id):
        records = _records("card-1")

        first, second = await asyncio.gather(
            service.runner.run(records, actor="api"),
            service.runner.run(records, actor="scheduler"),
        )

        assert first is second
        assert len(fake_google.events[calendar_id]) == 1
        assert not service.runner.is_running

    async def test_sequential_runs_are_independent(self, service):
        first = await service.runner.run(_records("card-1"))
        second = await service.runner.run(_records("card-1"))
        assert first is not second

    async def test_success_is_recorded_in_history(self, service, calendar_id, clock):
        await service.runner.run(_records("card-1", "card-2"), actor="api")

        state = await service.runner.last_run_state()
        assert state.ok is True
        assert state.last_mode == "sync"
        assert state.actor == "api"
        assert state.last_run_at == datetime(2026, 2, 16, 8, 0, tzinfo=UTC)
        assert state.counts.created == 2
        assert state.summary.startswith("created=2, updated=0")
        assert state.error == ""

    async def test_record_errors_mark_run_not_ok(self, service, fake_google, calendar_id):
        fake_google.fail("POST", "/events", 403, message="Forbidden")

        result = await service.runner.run(_records("card-1"))

        assert len(result.errors) == 1
        state = await service.runner.last_run_state()
        assert state.ok is False
        assert "(403): Forbidden" in state.error
        assert state.counts.errors == 1

    async def test_run_failure_is_recorded_and_raised(self, service, fake_google, calendar_id):
        fake_google.fail("GET", "/users/me/calendarList", 403, message="Forbidden")

        with pytest.raises(RemoteApiError):
            await service.runner.run(_records("card-1"), mode_label="daily_resync")

        state = await service.runner.last_run_state()
        assert state.ok is False
        assert state.last_mode == "daily_resync"
        assert "Forbidden" in state.error
        assert not service.runner.is_running

    async def test_missing_engine_raises_not_configured(self):
        history = MemoryRunHistoryStore()
        runner = SyncRunner(None, history)

        with pytest.raises(CalendarNotConfiguredError):
            await runner.run([])

        state = await runner.last_run_state()
        assert state.ok is False

    async def test_records_come_from_store_and_updates_are_persisted(self, service, calendar_id):
        store = MemoryRecordStore([make_record("card-1")])
        runner = SyncRunner(service._engine, MemoryRunHistoryStore(), record_store=store)

        result = await runner.run(persist_updates=True)

        assert result.created == 1
        assert store.raw("card-1")["values"][GOOGLE_EVENT_ID]

    async def test_updates_not_persisted_by_default(self, service, calendar_id):
        store = MemoryRecordStore([make_record("card-1")])
        runner = SyncRunner(service._engine, MemoryRunHistoryStore(), record_store=store)

        await runner.run()

        assert "values" not in store.raw("card-1")

    async def test_no_records_and_no_store(self, service, calendar_id):
        with pytest.raises(NoRecordsError):
            await service.runner.run()

    async def test_history_failure_does_not_fail_the_run(self, service, calendar_id):
        runner = SyncRunner(service._engine, _BrokenHistory())
        result = await runner.run(_records("card-1"))
        assert result.created == 1


class TestDailyResyncScheduler:
    @pytest.fixture
    def scheduler(self, service, clock) -> DailyResyncScheduler:
        service.runner._record_store = MemoryRecordStore([make_record("card-1")])
        return DailyResyncScheduler(
            service.runner,
            enabled=True,
            configured=lambda: True,
            interval_hours=24,
            clock=clock,
        )

    async def test_due_without_history(self, scheduler, calendar_id):
        assert await scheduler.is_due() is True

    async def test_not_due_when_disabled(self, service):
        scheduler = DailyResyncScheduler(service.runner, enabled=False, configured=lambda: True)
        assert await scheduler.is_due() is False

    async def test_not_due_when_unconfigured(self, service):
        scheduler = DailyResyncScheduler(service.runner, enabled=True, configured=lambda: False)
        assert await scheduler.is_due() is False

    async def test_runs_forced_resync_and_persists(self, scheduler, service, calendar_id, clock):
        result = await scheduler.maybe_run()

        assert result is not None
        assert result.mode == "daily_resync"
        state = await service.last_run_state()
        assert state.last_mode == "daily_resync"
        assert state.actor == "scheduler"
        assert service.record_store.raw("card-1")["values"][GOOGLE_EVENT_ID]

        # Recent history means the next check is a no-op.
        clock.advance(hours=23)
        assert await scheduler.maybe_run() is None
        clock.advance(hours=1)
        assert await scheduler.is_due() is True

    async def test_failures_are_logged_not_raised(self, scheduler, fake_google, calendar_id, caplog):
        fake_google.fail("GET", "/users/me/calendarList", 403)

        assert await scheduler.maybe_run() is None
        assert "Daily calendar resync failed" in caplog.text

    async def test_run_forever_stops_on_shutdown(self, service, calendar_id, clock):
        service.runner._record_store = MemoryRecordStore([make_record("card-1")])
        scheduler = DailyResyncScheduler(
            service.runner,
            enabled=True,
            configured=lambda: True,
            check_interval_minutes=0.001,
            clock=clock,
        )
        shutdown = asyncio.Event()

        task = asyncio.create_task(scheduler.run_forever(shutdown))
        for _ in range(200):
            if await service.last_run_state() is not None:
                break
            await asyncio.sleep(0.01)
        shutdown.set()
        await asyncio.wait_for(task, timeout=2)

        state = await service.last_run_state()
        assert state.last_mode == "daily_resync"
