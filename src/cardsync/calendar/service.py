"""Process-wide wiring of the calendar sync components."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

import httpx

from cardsync.calendar.client import (
    CalendarNotConfiguredError,
    GoogleCalendarClient,
    GoogleOAuthCredentials,
)
from cardsync.calendar.engine import ReconciliationEngine
from cardsync.calendar.models import CalendarHealth, Record, SlotSuggestions, SyncRunResult, SyncRunState
from cardsync.calendar.payload import EventPayloadBuilder
from cardsync.calendar.records import JsonFileRecordStore, RecordStore
from cardsync.calendar.resolver import CalendarResolver
from cardsync.calendar.runner import DailyResyncScheduler, SyncRunner
from cardsync.calendar.slots import SlotSuggester
from cardsync.config import AppConfig
from cardsync.core.metrics import SyncMetrics
from cardsync.core.state import MemoryRunHistoryStore, PostgresRunHistoryStore, RunHistoryStore

logger = logging.getLogger(__name__)

AUTO_IMPORT_MODE = "auto_import_sync"


class CalendarSyncService:
    """Owns one client, resolver, engine, runner and scheduler per process.

    The access-token cache (client) and the resolved calendar id (resolver)
    live exactly as long as this object. Operations that talk to Google raise
    :class:`CalendarNotConfiguredError` when Google is disabled or the
    credentials are incomplete.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
        history: RunHistoryStore | None = None,
        record_store: RecordStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        google = config.google
        self._clock = clock or (lambda: datetime.now(UTC))

        self.client: GoogleCalendarClient | None = None
        if google.is_configured:
            credentials = GoogleOAuthCredentials(
                client_id=google.client_id,
                client_secret=google.client_secret,
                refresh_token=google.refresh_token,
            )
            self.client = GoogleCalendarClient(credentials, http_client, clock=self._clock)

        if history is None:
            if config.state.dsn:
                history = PostgresRunHistoryStore(dsn=config.state.dsn)
            else:
                history = MemoryRunHistoryStore()
        if record_store is None and config.state.records_path:
            record_store = JsonFileRecordStore(config.state.records_path)

        self.history = history
        self.resolver = CalendarResolver(google, self.client)
        self.builder = EventPayloadBuilder(
            timezone=google.timezone,
            duration_min=google.event_duration_min,
            default_start_time=config.sync.default_start_time,
            default_title=config.sync.default_record_title,
        )
        self._engine: ReconciliationEngine | None = None
        self._slots: SlotSuggester | None = None
        if self.client is not None:
            self._engine = ReconciliationEngine(
                self.client,
                self.resolver,
                self.builder,
                eligible_status=config.sync.eligible_status,
                verify_interval_hours=config.sync.verify_interval_hours,
                lookup_max_results=config.sync.lookup_max_results,
                clock=self._clock,
            )
            self._slots = SlotSuggester(
                self.client,
                self.resolver,
                default_timezone=google.timezone,
                default_duration_min=google.event_duration_min,
                default_window_days=google.slot_window_days,
                clock=self._clock,
            )
        self.runner = SyncRunner(
            self._engine,
            history,
            record_store=record_store,
            metrics=SyncMetrics(),
            clock=self._clock,
        )
        self.scheduler = DailyResyncScheduler(
            self.runner,
            enabled=config.automation.daily_resync_enabled,
            configured=lambda: self.configured,
            interval_hours=config.automation.daily_resync_interval_hours,
            check_interval_minutes=config.automation.check_interval_minutes,
            clock=self._clock,
        )

    @property
    def configured(self) -> bool:
        return self.client is not None

    @property
    def record_store(self) -> RecordStore | None:
        return self.runner.record_store

    def _require_configured(self) -> None:
        if not self.configured:
            raise CalendarNotConfiguredError("Google Calendar is not configured")

    async def sync(
        self,
        records: Iterable[Record] | None = None,
        *,
        force_resync: bool = False,
        persist_updates: bool = False,
        mode_label: str = "",
        actor: str = "system",
    ) -> SyncRunResult:
        self._require_configured()
        return await self.runner.run(
            records,
            force_resync=force_resync,
            persist_updates=persist_updates,
            mode_label=mode_label,
            actor=actor,
        )

    async def sync_after_import(self, *, actor: str = "import") -> SyncRunResult | None:
        """Post-import hook: sync the record store when automation allows it."""
        if not self.config.automation.sync_on_import or not self.configured:
            return None
        if self.record_store is None:
            logger.warning("sync_on_import is enabled but no record store is attached")
            return None
        return await self.runner.run(
            persist_updates=True,
            mode_label=AUTO_IMPORT_MODE,
            actor=actor,
        )

    async def suggest_slots(self, **options: Any) -> SlotSuggestions:
        self._require_configured()
        assert self._slots is not None
        return await self._slots.suggest(**options)

    async def health(self) -> CalendarHealth:
        return await self.resolver.health()

    async def setup(
        self,
        *,
        shared_with: list[str] | None = None,
        role: str | None = None,
    ) -> CalendarHealth:
        self._require_configured()
        return await self.resolver.ensure_setup(shared_with=shared_with, role=role)

    async def last_run_state(self) -> SyncRunState | None:
        return await self.runner.last_run_state()

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()
        await self.history.close()

