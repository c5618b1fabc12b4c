"""Google Calendar mirroring for appointment records."""

from cardsync.calendar.client import (
    CalendarApiError,
    CalendarNotConfiguredError,
    CalendarNotFoundError,
    CalendarTokenRefreshError,
    CalendarTransportError,
    GoogleCalendarClient,
    GoogleOAuthCredentials,
    RemoteApiError,
)
from cardsync.calendar.engine import ReconciliationEngine
from cardsync.calendar.models import (
    CalendarHealth,
    CalendarLinkage,
    Record,
    RecordMessage,
    RecordUpdate,
    Slot,
    SlotSuggestions,
    SyncAction,
    SyncRunResult,
    SyncRunState,
)
from cardsync.calendar.payload import EventPayloadBuilder, payload_signature
from cardsync.calendar.records import JsonFileRecordStore, MemoryRecordStore, RecordStore
from cardsync.calendar.resolver import CalendarResolver
from cardsync.calendar.runner import DailyResyncScheduler, SyncRunner
from cardsync.calendar.service import CalendarSyncService
from cardsync.calendar.slots import SlotSuggester

__all__ = [
    "CalendarApiError",
    "CalendarHealth",
    "CalendarLinkage",
    "CalendarNotConfiguredError",
    "CalendarNotFoundError",
    "CalendarResolver",
    "CalendarSyncService",
    "CalendarTokenRefreshError",
    "CalendarTransportError",
    "DailyResyncScheduler",
    "EventPayloadBuilder",
    "GoogleCalendarClient",
    "GoogleOAuthCredentials",
    "JsonFileRecordStore",
    "MemoryRecordStore",
    "ReconciliationEngine",
    "Record",
    "RecordMessage",
    "RecordStore",
    "RecordUpdate",
    "RemoteApiError",
    "Slot",
    "SlotSuggester",
    "SlotSuggestions",
    "SyncAction",
    "SyncRunResult",
    "SyncRunState",
    "SyncRunner",
    "payload_signature",
]
