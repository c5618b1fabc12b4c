"""Single-flight sync runs, run-history bookkeeping and the daily resync trigger."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta

from opentelemetry.trace import Status, StatusCode

from cardsync.calendar.client import CalendarNotConfiguredError, sanitize_error_message
from cardsync.calendar.engine import ReconciliationEngine
from cardsync.calendar.models import Record, SyncRunResult, SyncRunState
from cardsync.calendar.records import RecordStore
from cardsync.core.logging import bind_sync_run, reset_sync_run
from cardsync.core.metrics import SyncMetrics
from cardsync.core.state import RunHistoryStore
from cardsync.core.telemetry import get_tracer

logger = logging.getLogger(__name__)

DAILY_RESYNC_MODE = "daily_resync"
SCHEDULER_ACTOR = "scheduler"


class NoRecordsError(ValueError):
    """Raised when a run has neither explicit records nor a record store."""


class SyncRunner:
    """Runs reconciliation with at most one run in flight.

    A caller arriving while a run is active awaits that run's result instead
    of starting a second one. Runs are never cancelled by their callers: the
    shared task is shielded, so a caller that goes away leaves the run to
    finish and record its outcome.
    """

    def __init__(
        self,
        engine: ReconciliationEngine | None,
        history: RunHistoryStore,
        *,
        record_store: RecordStore | None = None,
        metrics: SyncMetrics | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self._history = history
        self._record_store = record_store
        self._metrics = metrics or SyncMetrics()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._inflight: asyncio.Task[SyncRunResult] | None = None

    @property
    def is_running(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def record_store(self) -> RecordStore | None:
        return self._record_store

    async def last_run_state(self) -> SyncRunState | None:
        raw = await self._history.load()
        if raw is None:
            return None
        return SyncRunState.model_validate(raw)

    async def run(
        self,
        records: Iterable[Record] | None = None,
        *,
        force_resync: bool = False,
        persist_updates: bool = False,
        mode_label: str = "",
        actor: str = "system",
    ) -> SyncRunResult:
        """Run (or join) a reconciliation and return its result.

        ``records=None`` reads the records from the attached record store.
        With ``persist_updates`` the linkage patches are written back to the
        store. Failures are recorded in run history and re-raised.
        """
        if self._inflight is not None and not self._inflight.done():
            logger.info("Sync run already in progress, joining it (actor=%s)", actor)
            return await asyncio.shield(self._inflight)

        self._inflight = asyncio.create_task(
            self._execute(
                list(records) if records is not None else None,
                force_resync=force_resync,
                persist_updates=persist_updates,
                mode=mode_label or ("resync" if force_resync else "sync"),
                actor=actor,
            ),
            name="cardsync-sync-run",
        )
        return await asyncio.shield(self._inflight)

    async def _execute(
        self,
        records: list[Record] | None,
        *,
        force_resync: bool,
        persist_updates: bool,
        mode: str,
        actor: str,
    ) -> SyncRunResult:
        run_id = uuid.uuid4().hex[:12]
        token = bind_sync_run(run_id)
        started_at = self._clock()
        started = time.monotonic()
        tracer = get_tracer()

        try:
            with tracer.start_as_current_span("cardsync.sync_run") as span:
                span.set_attribute("cardsync.sync.mode", mode)
                span.set_attribute("cardsync.sync.actor", actor)
                span.set_attribute("cardsync.sync.force_resync", force_resync)
                logger.info("Calendar sync run started (mode=%s, actor=%s)", mode, actor)
                try:
                    if self._engine is None:
                        raise CalendarNotConfiguredError("Google Calendar is not configured")
                    if records is None:
                        records = await self._load_records()
                    result = await self._engine.reconcile(records, force_resync=force_resync)
                    result.mode = mode
                    if persist_updates and self._record_store is not None:
                        applied = await self._record_store.apply_updates(result.updates)
                        logger.info("Persisted %d record update(s)", applied)
                except Exception as exc:
                    duration_ms = int((time.monotonic() - started) * 1000)
                    message = sanitize_error_message(exc)
                    span.set_status(Status(StatusCode.ERROR, message))
                    self._metrics.record_run_duration(duration_ms, ok=False)
                    logger.error(
                        "Calendar sync run failed (mode=%s, actor=%s): %s", mode, actor, message
                    )
                    await self._save_state(
                        SyncRunState(
                            last_run_at=started_at,
                            last_mode=mode,
                            actor=actor,
                            ok=False,
                            error=message,
                            duration_ms=duration_ms,
                        )
                    )
                    raise

                duration_ms = int((time.monotonic() - started) * 1000)
                counts = result.counts()
                for name, value in counts.model_dump().items():
                    span.set_attribute(f"cardsync.sync.{name}", value)
                self._metrics.record_actions(counts.model_dump())
                self._metrics.record_run_duration(duration_ms, ok=not result.errors)
                await self._save_state(
                    SyncRunState(
                        last_run_at=started_at,
                        last_mode=mode,
                        actor=actor,
                        ok=not result.errors,
                        summary=result.summary(),
                        error=result.errors[0].message if result.errors else "",
                        duration_ms=duration_ms,
                        counts=counts,
                    )
                )
                return result
        finally:
            reset_sync_run(token)

    async def _load_records(self) -> list[Record]:
        if self._record_store is None:
            raise NoRecordsError("No records supplied and no record store attached")
        return await self._record_store.list_records()

    async def _save_state(self, state: SyncRunState) -> None:
        try:
            await self._history.save(state.model_dump(mode="json", by_alias=True))
        except Exception:
            logger.error("Failed to persist sync run history", exc_info=True)


class DailyResyncScheduler:
    """Triggers a forced resync when the last recorded run is older than the interval.

    The check reads run history rather than an in-process timer, so it stays
    idempotent across restarts.
    """

    def __init__(
        self,
        runner: SyncRunner,
        *,
        enabled: bool,
        configured: Callable[[], bool],
        interval_hours: float = 24.0,
        check_interval_minutes: float = 10.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._runner = runner
        self._enabled = enabled
        self._configured = configured
        self._interval = timedelta(hours=interval_hours)
        self._check_interval_s = check_interval_minutes * 60
        self._clock = clock or (lambda: datetime.now(UTC))

    async def is_due(self) -> bool:
        if not self._enabled or not self._configured():
            return False
        if self._runner.is_running:
            return False
        state = await self._runner.last_run_state()
        if state is None or state.last_run_at is None:
            return True
        return self._clock() - state.last_run_at >= self._interval

    async def maybe_run(self) -> SyncRunResult | None:
        """Run the daily forced resync if due; failures are logged, not raised."""
        if not await self.is_due():
            return None
        try:
            return await self._runner.run(
                force_resync=True,
                persist_updates=True,
                mode_label=DAILY_RESYNC_MODE,
                actor=SCHEDULER_ACTOR,
            )
        except Exception:
            logger.error("Daily calendar resync failed", exc_info=True)
            return None

    async def run_forever(self, shutdown_event: asyncio.Event | None = None) -> None:
        """Check every ``check_interval_minutes`` until *shutdown_event* is set."""
        shutdown_event = shutdown_event or asyncio.Event()
        logger.info(
            "Daily resync scheduler started (enabled=%s, check every %.0fs)",
            self._enabled,
            self._check_interval_s,
        )
        while not shutdown_event.is_set():
            try:
                await self.maybe_run()
            except Exception:
                logger.error("Daily resync check failed", exc_info=True)
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self._check_interval_s)
            except TimeoutError:
                pass
        logger.info("Daily resync scheduler stopped")
