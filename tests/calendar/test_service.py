"""Tests for CalendarSyncService wiring and the post-import sync hook."""

from __future__ import annotations

import json

import pytest

from cardsync.calendar.client import CalendarNotConfiguredError
from cardsync.calendar.models import GOOGLE_EVENT_ID, Record
from cardsync.calendar.records import JsonFileRecordStore, MemoryRecordStore
from cardsync.calendar.service import CalendarSyncService
from cardsync.core.state import MemoryRunHistoryStore, PostgresRunHistoryStore
from conftest import make_config, make_record

pytestmark = pytest.mark.unit


class TestWiring:
    def test_unconfigured_service_has_no_client(self):
        service = CalendarSyncService(make_config(google={"client_secret": ""}))
        assert service.configured is False
        assert service.client is None

    def test_history_store_follows_state_dsn(self):
        service = CalendarSyncService(make_config(state={"dsn": "postgresql://localhost/cardsync"}))
        assert isinstance(service.history, PostgresRunHistoryStore)
        assert isinstance(CalendarSyncService(make_config()).history, MemoryRunHistoryStore)

    def test_records_path_attaches_json_store(self, tmp_path):
        path = tmp_path / "records.json"
        service = CalendarSyncService(make_config(state={"records_path": str(path)}))
        assert isinstance(service.record_store, JsonFileRecordStore)
        assert service.record_store.path == path


class TestOperations:
    async def test_sync_requires_configuration(self):
        service = CalendarSyncService(make_config(google={"enabled": False}))
        with pytest.raises(CalendarNotConfiguredError):
            await service.sync([Record.model_validate(make_record())])
        with pytest.raises(CalendarNotConfiguredError):
            await service.suggest_slots()
        with pytest.raises(CalendarNotConfiguredError):
            await service.setup()

    async def test_health_of_unconfigured_service(self):
        service = CalendarSyncService(make_config(google={"enabled": False}))
        health = await service.health()
        assert health.enabled is False

    async def test_sync_and_slots(self, service, calendar_id):
        result = await service.sync([Record.model_validate(make_record())], actor="test")
        assert result.created == 1
        slots = await service.suggest_slots(top=1)
        assert len(slots.slots) == 1
        assert (await service.last_run_state()).actor == "test"


class TestSyncAfterImport:
    async def test_disabled_by_default(self, service, calendar_id):
        service.runner._record_store = MemoryRecordStore([make_record()])
        assert await service.sync_after_import() is None
        assert await service.last_run_state() is None

    async def test_runs_and_persists_when_enabled(self, http_client, clock, calendar_id, tmp_path):
        path = tmp_path / "records.json"
        path.write_text(json.dumps([make_record()]))
        config = make_config(
            automation={"sync_on_import": "yes"},
            state={"records_path": str(path)},
        )
        service = CalendarSyncService(config, http_client=http_client, clock=clock)

        result = await service.sync_after_import()

        assert result is not None
        assert result.mode == "auto_import_sync"
        saved = json.loads(path.read_text())
        assert saved[0]["values"][GOOGLE_EVENT_ID]
        state = await service.last_run_state()
        assert state.last_mode == "auto_import_sync"
        assert state.actor == "import"

    async def test_enabled_without_store_is_a_no_op(self, http_client, clock, calendar_id):
        config = make_config(automation={"sync_on_import": True})
        service = CalendarSyncService(config, http_client=http_client, clock=clock)
        assert await service.sync_after_import() is None
