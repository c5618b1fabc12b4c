"""Per-record reconciliation between local records and Google Calendar events.

The engine keeps no state between runs: everything it needs is read from the
records' ``google_*`` values and from the remote calendar, and everything it
learns is returned as linkage patches in the :class:`SyncRunResult`.

Per record, in order:

1. Ineligible records (hidden, other status, no date) go to teardown: the
   stored event and every marker-linked event are deleted, except a stored
   event marked for another record, which is only unlinked.
2. The event payload is built; a record without a usable date is an error.
3. Identity: a stored event id is verified by GET when verification is due
   (or a write is about to happen); missing or foreign-owned events are
   discarded. Without a usable id the calendar is searched by the private
   ``cardId`` marker, the first hit becomes primary and the rest are deleted.
4. Write: unchanged signature short-circuits, otherwise PATCH (recreating on
   404/410) or POST.

Every failure is caught at the record boundary so one record never aborts
the run.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from cardsync.calendar.client import (
    CalendarApiError,
    GoogleCalendarClient,
    RemoteApiError,
    event_card_id,
    google_rfc3339,
    sanitize_error_message,
)
from cardsync.calendar.models import (
    GOOGLE_EVENT_ID,
    GOOGLE_EVENT_LINK,
    GOOGLE_LAST_ACTION,
    GOOGLE_SYNC_ERROR,
    GOOGLE_SYNC_SIGNATURE,
    GOOGLE_SYNC_STATUS,
    GOOGLE_SYNCED_AT,
    GOOGLE_VERIFIED_AT,
    SYNCED_ACTIONS,
    Record,
    RecordMessage,
    RecordUpdate,
    SyncAction,
    SyncRunResult,
    SyncStatus,
)
from cardsync.calendar.payload import EventPayloadBuilder, payload_signature
from cardsync.calendar.resolver import CalendarResolver

logger = logging.getLogger(__name__)

DEFAULT_ELIGIBLE_STATUS = "Scheduled"
DEFAULT_VERIFY_INTERVAL_HOURS = 6.0
DEFAULT_LOOKUP_MAX_RESULTS = 10

PAYLOAD_ERROR_MESSAGE = "Record date/time cannot be converted into an event start and end"

# google_last_action labels that are not plain SyncAction values.
LAST_ACTION_PAYLOAD_ERROR = "payload_error"
LAST_ACTION_SYNC_ERROR = "sync_error"
LAST_ACTION_DELETE_ERROR = "delete_error"
LAST_ACTION_RECREATE_ERROR = "recreate_error"
LAST_ACTION_RELINKED_UNCHANGED = "relinked_unchanged"


def _normalize_status(value: str) -> str:
    return " ".join(value.split()).casefold()


class ReconciliationEngine:
    """Decides create/update/relink/recreate/delete/skip for each record."""

    def __init__(
        self,
        client: GoogleCalendarClient,
        resolver: CalendarResolver,
        builder: EventPayloadBuilder,
        *,
        eligible_status: str = DEFAULT_ELIGIBLE_STATUS,
        verify_interval_hours: float = DEFAULT_VERIFY_INTERVAL_HOURS,
        lookup_max_results: int = DEFAULT_LOOKUP_MAX_RESULTS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client = client
        self._resolver = resolver
        self._builder = builder
        self._eligible_status = _normalize_status(eligible_status)
        self._verify_interval = timedelta(hours=verify_interval_hours)
        self._lookup_max_results = lookup_max_results
        self._clock = clock or (lambda: datetime.now(UTC))

    def is_eligible(self, record: Record) -> bool:
        if record.hidden:
            return False
        if _normalize_status(record.status) != self._eligible_status:
            return False
        return bool(record.date)

    async def reconcile(
        self,
        records: Iterable[Record],
        *,
        force_resync: bool = False,
    ) -> SyncRunResult:
        """Reconcile *records* against the working calendar.

        Resolving the calendar id happens once, before any record is touched;
        a failure there propagates to the caller as a run-level error.
        """
        records = list(records)
        calendar_id = await self._resolver.resolve(create_if_missing=True)
        result = SyncRunResult(
            calendar_id=calendar_id,
            mode="resync" if force_resync else "sync",
            total_cards=len(records),
        )

        for record in records:
            if self.is_eligible(record):
                await self._reconcile_eligible(calendar_id, record, result, force_resync=force_resync)
            else:
                await self._reconcile_ineligible(calendar_id, record, result)

        result.synced_cards = sum(1 for update in result.updates if update.action in SYNCED_ACTIONS)
        logger.info(
            "Calendar sync finished for %d record(s) on %s: %s",
            result.total_cards,
            calendar_id,
            result.summary(),
        )
        return result

    # ------------------------------------------------------------------
    # Eligible records
    # ------------------------------------------------------------------

    async def _reconcile_eligible(
        self,
        calendar_id: str,
        record: Record,
        result: SyncRunResult,
        *,
        force_resync: bool,
    ) -> None:
        try:
            payload = self._builder.build(record)
            if payload is None:
                logger.warning("Record %s has no usable date/time, skipping", record.id)
                self._record_error(result, record, PAYLOAD_ERROR_MESSAGE, LAST_ACTION_PAYLOAD_ERROR)
                return
            await self._sync_record(
                calendar_id,
                record,
                payload,
                result,
                force_resync=force_resync,
            )
        except Exception as exc:
            logger.warning("Calendar sync failed for record %s", record.id, exc_info=True)
            self._record_error(result, record, sanitize_error_message(exc), LAST_ACTION_SYNC_ERROR)

    async def _sync_record(
        self,
        calendar_id: str,
        record: Record,
        payload: dict[str, Any],
        result: SyncRunResult,
        *,
        force_resync: bool,
    ) -> None:
        linkage = record.linkage
        stored_event_id = linkage.event_id
        signature = payload_signature(payload)
        signature_matches = bool(linkage.sync_signature) and linkage.sync_signature == signature

        target_event_id = stored_event_id
        event: dict[str, Any] | None = None
        linked_via_lookup = False
        fetched = False

        # A stored id is also verified before any write to it, so a foreign
        # event is never patched between scheduled verifications.
        must_verify = force_resync or self._verification_due(linkage.verified_at_datetime())
        if target_event_id and (must_verify or not signature_matches):
            existing = await self._client.get_event(calendar_id, target_event_id)
            fetched = True
            if existing is None:
                self._warn(
                    result,
                    record,
                    f"Event {target_event_id} was not found; trying to relink or recreate",
                )
                target_event_id = ""
            else:
                owner_card_id = event_card_id(existing)
                if owner_card_id and owner_card_id != record.id:
                    self._warn(
                        result,
                        record,
                        f"Event {target_event_id} belongs to record {owner_card_id}; "
                        "a new event will be linked",
                    )
                    target_event_id = ""
                else:
                    event = existing

        if not target_event_id:
            linked_events = await self._client.list_events_by_card(
                calendar_id,
                record.id,
                max_results=self._lookup_max_results,
            )
            if linked_events:
                event = linked_events[0]
                target_event_id = str(event["id"])
                linked_via_lookup = True
                result.deduplicated += await self._delete_linked_events(
                    calendar_id,
                    linked_events,
                    keep_event_id=target_event_id,
                )

        if target_event_id and signature_matches and not force_resync:
            event_link = str((event or {}).get("htmlLink") or linkage.event_link)
            if linked_via_lookup:
                self._record_success(
                    result,
                    record,
                    SyncAction.RELINKED,
                    event_id=target_event_id,
                    event_link=event_link,
                    signature=signature,
                    last_action=LAST_ACTION_RELINKED_UNCHANGED,
                )
            else:
                self._record_success(
                    result,
                    record,
                    SyncAction.UNCHANGED,
                    event_id=target_event_id,
                    event_link=event_link,
                    signature=signature,
                    verified_at=None if fetched else linkage.verified_at,
                )
            return

        if target_event_id:
            try:
                event = await self._client.patch_event(calendar_id, target_event_id, payload)
            except RemoteApiError as exc:
                if not exc.is_not_found:
                    raise
                await self._recreate_vanished(calendar_id, record, payload, signature, target_event_id, result)
                return
            action = SyncAction.RELINKED if linked_via_lookup else SyncAction.UPDATED
        else:
            event = await self._client.create_event(calendar_id, payload)
            action = SyncAction.RECREATED if stored_event_id else SyncAction.CREATED

        self._record_success(
            result,
            record,
            action,
            event_id=str(event.get("id") or ""),
            event_link=str(event.get("htmlLink") or ""),
            signature=signature,
        )

    async def _recreate_vanished(
        self,
        calendar_id: str,
        record: Record,
        payload: dict[str, Any],
        signature: str,
        vanished_event_id: str,
        result: SyncRunResult,
    ) -> None:
        try:
            event = await self._client.create_event(calendar_id, payload)
        except CalendarApiError as exc:
            logger.warning("Recreating event for record %s failed", record.id, exc_info=True)
            self._record_error(result, record, sanitize_error_message(exc), LAST_ACTION_RECREATE_ERROR)
            return

        self._warn(
            result,
            record,
            f"Event {vanished_event_id} no longer exists and was recreated",
        )
        self._record_success(
            result,
            record,
            SyncAction.RECREATED,
            event_id=str(event.get("id") or ""),
            event_link=str(event.get("htmlLink") or ""),
            signature=signature,
        )

    def _verification_due(self, verified_at: datetime | None) -> bool:
        if verified_at is None:
            return True
        return self._clock() - verified_at >= self._verify_interval

    # ------------------------------------------------------------------
    # Ineligible records
    # ------------------------------------------------------------------

    async def _reconcile_ineligible(
        self,
        calendar_id: str,
        record: Record,
        result: SyncRunResult,
    ) -> None:
        try:
            await self._teardown(calendar_id, record, result)
        except Exception as exc:
            logger.warning("Removing calendar event failed for record %s", record.id, exc_info=True)
            self._record_error(result, record, sanitize_error_message(exc), LAST_ACTION_DELETE_ERROR)

    async def _teardown(self, calendar_id: str, record: Record, result: SyncRunResult) -> None:
        stored_event_id = record.linkage.event_id
        removed = 0
        if stored_event_id:
            existing = await self._client.get_event(calendar_id, stored_event_id)
            owner_card_id = event_card_id(existing)
            if owner_card_id and owner_card_id != record.id:
                self._warn(
                    result,
                    record,
                    f"Event {stored_event_id} belongs to record {owner_card_id}; "
                    "only the local link is removed",
                )
            elif existing is not None and await self._client.delete_event(
                calendar_id, stored_event_id, ignore_not_found=True
            ):
                removed += 1

        linked_events = await self._client.list_events_by_card(
            calendar_id,
            record.id,
            max_results=self._lookup_max_results,
        )
        removed_linked = await self._delete_linked_events(calendar_id, linked_events, keep_event_id="")
        removed += removed_linked
        result.deduplicated += removed_linked

        if not stored_event_id and not linked_events:
            return

        if removed > 0:
            result.deleted += removed
            action = SyncAction.DELETED
            status = SyncStatus.DELETED
        else:
            result.deleted += 1 if stored_event_id else 0
            action = SyncAction.DETACHED
            status = SyncStatus.DETACHED

        now = google_rfc3339(self._clock())
        result.updates.append(
            RecordUpdate(
                card_id=record.id,
                action=action,
                values={
                    GOOGLE_EVENT_ID: "",
                    GOOGLE_EVENT_LINK: "",
                    GOOGLE_SYNC_STATUS: status.value,
                    GOOGLE_SYNC_ERROR: "",
                    GOOGLE_SYNCED_AT: now,
                    GOOGLE_SYNC_SIGNATURE: "",
                    GOOGLE_VERIFIED_AT: now,
                    GOOGLE_LAST_ACTION: action.value,
                },
            )
        )
        logger.info("Record %s %s its calendar event (removed=%d)", record.id, action.value, removed)

    async def _delete_linked_events(
        self,
        calendar_id: str,
        events: list[dict[str, Any]],
        *,
        keep_event_id: str,
    ) -> int:
        removed = 0
        for event in events:
            candidate_id = event.get("id")
            if not isinstance(candidate_id, str) or not candidate_id:
                continue
            if candidate_id == keep_event_id:
                continue
            if await self._client.delete_event(calendar_id, candidate_id, ignore_not_found=True):
                removed += 1
        return removed

    # ------------------------------------------------------------------
    # Result bookkeeping
    # ------------------------------------------------------------------

    def _record_success(
        self,
        result: SyncRunResult,
        record: Record,
        action: SyncAction,
        *,
        event_id: str,
        event_link: str,
        signature: str,
        last_action: str | None = None,
        verified_at: str | None = None,
    ) -> None:
        """Count *action* and append the linkage patch.

        ``verified_at`` carries the previous verification time forward when no
        remote read confirmed the event during this run.
        """
        now = google_rfc3339(self._clock())
        setattr(result, action.value, getattr(result, action.value) + 1)
        result.updates.append(
            RecordUpdate(
                card_id=record.id,
                action=action,
                values={
                    GOOGLE_EVENT_ID: event_id,
                    GOOGLE_EVENT_LINK: event_link,
                    GOOGLE_SYNC_STATUS: SyncStatus.OK.value,
                    GOOGLE_SYNC_ERROR: "",
                    GOOGLE_SYNCED_AT: now,
                    GOOGLE_SYNC_SIGNATURE: signature,
                    GOOGLE_VERIFIED_AT: verified_at or now,
                    GOOGLE_LAST_ACTION: last_action or action.value,
                },
            )
        )
        logger.debug("Record %s -> %s (event %s)", record.id, action.value, event_id)

    def _record_error(
        self,
        result: SyncRunResult,
        record: Record,
        message: str,
        last_action: str,
    ) -> None:
        result.errors.append(RecordMessage(card_id=record.id, message=message))
        result.updates.append(
            RecordUpdate(
                card_id=record.id,
                action=SyncAction.ERROR,
                values={
                    GOOGLE_SYNC_STATUS: SyncStatus.ERROR.value,
                    GOOGLE_SYNC_ERROR: message,
                    GOOGLE_SYNCED_AT: google_rfc3339(self._clock()),
                    GOOGLE_LAST_ACTION: last_action,
                },
            )
        )

    @staticmethod
    def _warn(result: SyncRunResult, record: Record, message: str) -> None:
        logger.warning("Record %s: %s", record.id, message)
        result.warnings.append(RecordMessage(card_id=record.id, message=message))
