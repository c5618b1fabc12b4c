"""Deterministic Google event payloads built from records, plus change signatures."""

from __future__ import annotations

import hashlib
import json
import re
from datetime import date, datetime, timedelta
from typing import Any

from cardsync.calendar.client import CARD_ID_PRIVATE_KEY
from cardsync.calendar.models import LINKAGE_KEYS, Record

DEFAULT_START_TIME = "09:00"
DEFAULT_RECORD_TITLE = "New appointment"
DESCRIPTION_COMMENT_LIMIT = 3
SIGNATURE_HEX_CHARS = 24

_HH_MM_PATTERN = re.compile(r"\b([01]?\d|2[0-3])[:.]([0-5]\d)\b")
_UHR_PATTERN = re.compile(r"\b([01]?\d|2[0-3])(?:[:. ]([0-5]\d))?\s*uhr\b")
_HOUR_SUFFIX_PATTERN = re.compile(r"\b([01]?\d|2[0-3])\s*h\b")
# A date such as "19.02.2026" or "Datum: 19.02" must not be mistaken for a time.
_DATE_AFTER_PATTERN = re.compile(r"^\s*[./-]\s*\d{2,4}")
_DATE_BEFORE_PATTERN = re.compile(r"(?:datum|date)\s*[:=]?\s*$")
_TRAILING_PUNCTUATION = re.compile(r"[\s,;:.!?]+$")

# (pattern, minute, hour offset) for spoken German times, e.g. "halb drei" is 02:30.
_SPOKEN_PATTERNS = (
    (re.compile(r"\bviertel\s+nach\s+(\w+)"), 15, 0),
    (re.compile(r"\bviertel\s+vor\s+(\w+)"), 45, -1),
    (re.compile(r"\bhalb\s+(\w+)"), 30, -1),
    (re.compile(r"\bdreiviertel\s+(\w+)"), 45, -1),
    (re.compile(r"\bum\s+(\w+)"), 0, 0),
)

_HOUR_WORDS = {
    "ein": 1, "eins": 1, "eine": 1, "zwei": 2, "drei": 3, "vier": 4,
    "fünf": 5, "fuenf": 5, "funf": 5, "sechs": 6, "sieben": 7, "acht": 8,
    "neun": 9, "zehn": 10, "elf": 11, "zwölf": 12, "zwoelf": 12, "zwolf": 12,
    "dreizehn": 13, "vierzehn": 14, "fünfzehn": 15, "fuenfzehn": 15,
    "sechzehn": 16, "siebzehn": 17, "achtzehn": 18, "neunzehn": 19,
    "zwanzig": 20, "einundzwanzig": 21, "zweiundzwanzig": 22, "dreiundzwanzig": 23,
}  # fmt: skip


def _parse_hour_token(token: str) -> int | None:
    if token.isdigit() and len(token) <= 2:
        hour = int(token)
        return hour if hour <= 24 else None
    return _HOUR_WORDS.get(token)


def parse_time_label(value: Any) -> tuple[int, int] | None:
    """Extract ``(hour, minute)`` from free text.

    Understands ``15:00``, ``15.30``, ``15 Uhr``, ``15 30 Uhr``, ``8h`` and the
    spoken German forms ``viertel nach drei``, ``viertel vor drei``,
    ``halb drei``, ``dreiviertel drei`` and ``um drei``.
    """
    if value is None:
        return None
    lowered = _TRAILING_PUNCTUATION.sub("", str(value).strip()).lower()
    if not lowered:
        return None

    for match in _HH_MM_PATTERN.finditer(lowered):
        before = lowered[max(0, match.start() - 12) : match.start()]
        if _DATE_BEFORE_PATTERN.search(before):
            continue
        if _DATE_AFTER_PATTERN.match(lowered[match.end() :]):
            continue
        return int(match.group(1)), int(match.group(2))

    match = _UHR_PATTERN.search(lowered) or _HOUR_SUFFIX_PATTERN.search(lowered)
    if match:
        minute = match.group(2) if match.re is _UHR_PATTERN else None
        return int(match.group(1)), int(minute or 0)

    for pattern, minute, offset in _SPOKEN_PATTERNS:
        spoken = pattern.search(lowered)
        if spoken is None:
            continue
        hour = _parse_hour_token(spoken.group(1))
        if hour is not None:
            return (hour + offset) % 24, minute
    return None


def _is_time_like_key(key: str) -> bool:
    normalized = key.strip().lower()
    if normalized in LINKAGE_KEYS:
        return False
    return "uhrzeit" in normalized or normalized == "zeit" or "time" in normalized


def record_start_time(record: Record) -> tuple[int, int] | None:
    """Return the record's start time from ``timeLabel`` or a time-like value, if any."""
    parsed = parse_time_label(record.time_label)
    if parsed is not None:
        return parsed
    for key, raw in record.values.items():
        if not _is_time_like_key(key):
            continue
        parsed = parse_time_label(raw)
        if parsed is not None:
            return parsed
    return None


def payload_signature(payload: dict[str, Any]) -> str:
    """Stable content hash of *payload* for change detection.

    Keys are serialized in sorted order, so the signature does not depend on
    dict insertion order.
    """
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:SIGNATURE_HEX_CHARS]


class EventPayloadBuilder:
    """Builds Google event bodies for records.

    Event times are local wall-clock ``YYYY-MM-DDTHH:MM:SS`` values paired with
    ``timeZone``; Google resolves the offset, including across DST changes.
    """

    def __init__(
        self,
        *,
        timezone: str,
        duration_min: int,
        default_start_time: str = DEFAULT_START_TIME,
        default_title: str = DEFAULT_RECORD_TITLE,
    ) -> None:
        fallback = parse_time_label(default_start_time)
        if fallback is None:
            raise ValueError(f"default_start_time is not a valid time: {default_start_time!r}")
        self._timezone = timezone
        self._duration = timedelta(minutes=duration_min)
        self._fallback_time = fallback
        self._default_title = default_title

    def build(self, record: Record) -> dict[str, Any] | None:
        """Return the event body for *record*, or ``None`` when no interval can be computed."""
        if not record.date:
            return None
        try:
            day = date.fromisoformat(record.date)
        except ValueError:
            return None

        hour, minute = record_start_time(record) or self._fallback_time

        start = datetime(day.year, day.month, day.day, hour, minute)
        end = start + self._duration

        location = ", ".join(
            part.strip() for part in (record.address, record.location) if part and part.strip()
        )
        title = record.title.strip() or self._default_title

        return {
            "summary": title,
            "location": location,
            "description": self._description(record, title),
            "start": {"dateTime": _local_iso(start), "timeZone": self._timezone},
            "end": {"dateTime": _local_iso(end), "timeZone": self._timezone},
            "extendedProperties": {"private": {CARD_ID_PRIVATE_KEY: record.id}},
        }

    @staticmethod
    def _description(record: Record, title: str) -> str:
        lines = [f"Card: {title}"]
        sources = ", ".join(source for source in record.sources if source.strip())
        if sources:
            lines.append(f"Source: {sources}")
        if record.address.strip():
            lines.append(f"Address: {record.address.strip()}")
        if record.location.strip():
            lines.append(f"Location: {record.location.strip()}")
        if record.phone.strip():
            lines.append(f"Phone: {record.phone.strip()}")

        non_empty = [comment.strip() for comment in record.comments if comment.strip()]
        recent = non_empty[-DESCRIPTION_COMMENT_LIMIT:]
        if recent:
            lines.append("Comments:")
            lines.extend(recent)
        return "\n".join(lines)


def _local_iso(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%S")
