"""Record, linkage and run-result models shared by the calendar sync components."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Wire keys used for the Google linkage inside ``Record.values`` and update patches.
GOOGLE_EVENT_ID = "google_event_id"
GOOGLE_EVENT_LINK = "google_event_link"
GOOGLE_SYNC_STATUS = "google_sync_status"
GOOGLE_SYNC_ERROR = "google_sync_error"
GOOGLE_SYNCED_AT = "google_synced_at"
GOOGLE_SYNC_SIGNATURE = "google_sync_signature"
GOOGLE_VERIFIED_AT = "google_verified_at"
GOOGLE_LAST_ACTION = "google_last_action"

LINKAGE_KEYS = (
    GOOGLE_EVENT_ID,
    GOOGLE_EVENT_LINK,
    GOOGLE_SYNC_STATUS,
    GOOGLE_SYNC_ERROR,
    GOOGLE_SYNCED_AT,
    GOOGLE_SYNC_SIGNATURE,
    GOOGLE_VERIFIED_AT,
    GOOGLE_LAST_ACTION,
)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SyncAction(StrEnum):
    """Per-record outcome of one reconciliation pass."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    RELINKED = "relinked"
    RECREATED = "recreated"
    DELETED = "deleted"
    DETACHED = "detached"
    ERROR = "error"


class SyncStatus(StrEnum):
    OK = "ok"
    ERROR = "error"
    DELETED = "deleted"
    DETACHED = "detached"


# Actions that leave the record with a live, linked remote event.
SYNCED_ACTIONS = frozenset(
    {
        SyncAction.CREATED,
        SyncAction.UPDATED,
        SyncAction.RELINKED,
        SyncAction.RECREATED,
        SyncAction.UNCHANGED,
    }
)


class CalendarLinkage(BaseModel):
    """Google linkage of one record, read from its ``google_*`` values."""

    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(default="", alias=GOOGLE_EVENT_ID)
    event_link: str = Field(default="", alias=GOOGLE_EVENT_LINK)
    sync_status: str = Field(default="", alias=GOOGLE_SYNC_STATUS)
    sync_error: str = Field(default="", alias=GOOGLE_SYNC_ERROR)
    synced_at: str = Field(default="", alias=GOOGLE_SYNCED_AT)
    sync_signature: str = Field(default="", alias=GOOGLE_SYNC_SIGNATURE)
    verified_at: str = Field(default="", alias=GOOGLE_VERIFIED_AT)
    last_action: str = Field(default="", alias=GOOGLE_LAST_ACTION)

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()

    @classmethod
    def from_values(cls, values: dict[str, Any]) -> CalendarLinkage:
        return cls.model_validate({key: values.get(key) for key in LINKAGE_KEYS})

    def verified_at_datetime(self) -> datetime | None:
        """Parse ``verified_at``; ``None`` when missing or not a timestamp."""
        if not self.verified_at:
            return None
        normalized = self.verified_at
        if normalized.endswith("Z"):
            normalized = f"{normalized[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            return None
        return parsed

    def to_values(self) -> dict[str, str]:
        return self.model_dump(by_alias=True)


class Record(_CamelModel):
    """A local appointment record ("card").

    Linkage lives in ``values`` under the ``google_*`` keys. A ``google``
    object in the input (keyed by either field names or wire keys) is folded
    into ``values`` on validation.
    """

    id: str = Field(min_length=1)
    title: str = ""
    address: str = ""
    location: str = ""
    phone: str = ""
    comments: list[str] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)
    date: str | None = None
    time_label: str | None = None
    status: str = ""
    hidden: bool = False
    values: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _fold_google_linkage(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("hiddenAt"):
            data.setdefault("hidden", True)
        google = data.pop("google", None)
        if isinstance(google, dict):
            linkage = CalendarLinkage.model_validate(google)
            values = dict(data.get("values") or {})
            for key, value in linkage.to_values().items():
                if value:
                    values.setdefault(key, value)
            data["values"] = values
        return data

    @field_validator("id")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("id must be a non-empty string")
        return normalized

    @field_validator("title", "address", "location", "phone", "status", mode="before")
    @classmethod
    def _coerce_optional_text(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value)

    @field_validator("comments", mode="before")
    @classmethod
    def _normalize_comments(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if not isinstance(value, list):
            value = [value]
        normalized: list[str] = []
        for entry in value:
            if isinstance(entry, dict):
                entry = entry.get("text")
            if entry is None:
                continue
            normalized.append(str(entry))
        return normalized

    @field_validator("sources", mode="before")
    @classmethod
    def _normalize_sources(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        return [str(entry) for entry in value if entry]

    @field_validator("date", "time_label", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> str | None:
        if value is None:
            return None
        normalized = str(value).strip()
        return normalized or None

    @property
    def linkage(self) -> CalendarLinkage:
        return CalendarLinkage.from_values(self.values)


class RecordUpdate(_CamelModel):
    """Linkage patch produced for one record."""

    card_id: str
    action: SyncAction
    values: dict[str, str]


class RecordMessage(_CamelModel):
    card_id: str
    message: str


class SyncCounts(BaseModel):
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    relinked: int = 0
    recreated: int = 0
    deduplicated: int = 0
    errors: int = 0


class SyncRunResult(_CamelModel):
    """Aggregated outcome of a reconciliation run (camelCase on the wire)."""

    calendar_id: str
    mode: str
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    relinked: int = 0
    recreated: int = 0
    deduplicated: int = 0
    total_cards: int = 0
    synced_cards: int = 0
    errors: list[RecordMessage] = Field(default_factory=list)
    warnings: list[RecordMessage] = Field(default_factory=list)
    updates: list[RecordUpdate] = Field(default_factory=list)

    def counts(self) -> SyncCounts:
        return SyncCounts(
            created=self.created,
            updated=self.updated,
            deleted=self.deleted,
            unchanged=self.unchanged,
            relinked=self.relinked,
            recreated=self.recreated,
            deduplicated=self.deduplicated,
            errors=len(self.errors),
        )

    def summary(self) -> str:
        counts = self.counts()
        return (
            f"created={counts.created}, updated={counts.updated}, deleted={counts.deleted}, "
            f"unchanged={counts.unchanged}, relinked={counts.relinked}, "
            f"recreated={counts.recreated}, deduplicated={counts.deduplicated}, "
            f"errors={counts.errors}"
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class SyncRunState(_CamelModel):
    """Run-history entry written after every run."""

    last_run_at: datetime | None = None
    last_mode: str = ""
    actor: str = ""
    ok: bool | None = None
    summary: str = ""
    error: str = ""
    duration_ms: int = 0
    counts: SyncCounts = Field(default_factory=SyncCounts)


class Slot(_CamelModel):
    start: datetime
    end: datetime
    date: str
    time_label: str
    label: str


class SlotSuggestions(_CamelModel):
    calendar_id: str
    timezone: str
    duration_min: int
    window_days: int
    slots: list[Slot] = Field(default_factory=list)


class CalendarHealth(_CamelModel):
    enabled: bool
    configured: bool
    calendar_configured: bool = False
    calendar_id: str = ""
    calendar_name: str = ""
    timezone: str = ""
    access_role: str = ""
    can_write: bool = False
    shared_with: list[str] = Field(default_factory=list)
    error: str = ""
