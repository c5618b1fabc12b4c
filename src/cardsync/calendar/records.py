"""Record-store interface and the stores shipped with cardsync.

The engine never writes records itself: it returns linkage patches, and a
store merges them into the matching record's ``values``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from cardsync.calendar.models import Record, RecordUpdate

logger = logging.getLogger(__name__)


def apply_linkage_patch(record: dict[str, Any], values: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *record* with *values* merged into its ``values`` mapping."""
    merged = dict(record)
    current = record.get("values")
    merged["values"] = {**(current if isinstance(current, dict) else {}), **values}
    return merged


class RecordStore(ABC):
    """Source of records and sink for their linkage patches."""

    @abstractmethod
    async def list_records(self) -> list[Record]: ...

    @abstractmethod
    async def apply_updates(self, updates: Iterable[RecordUpdate]) -> int:
        """Merge each update into its record; return how many were applied."""


class MemoryRecordStore(RecordStore):
    """Records held as raw dicts in memory."""

    def __init__(self, records: Iterable[dict[str, Any]] = ()) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        for raw in records:
            record = Record.model_validate(raw)
            self._records[record.id] = dict(raw)

    def raw(self, record_id: str) -> dict[str, Any] | None:
        return self._records.get(record_id)

    def put(self, raw: dict[str, Any]) -> None:
        record = Record.model_validate(raw)
        self._records[record.id] = dict(raw)

    async def list_records(self) -> list[Record]:
        return [Record.model_validate(raw) for raw in self._records.values()]

    async def apply_updates(self, updates: Iterable[RecordUpdate]) -> int:
        return _merge_updates(self._records, updates)


class JsonFileRecordStore(RecordStore):
    """Records stored as a JSON list in a single file.

    Updates rewrite the whole file through a temporary sibling so a crash
    never leaves a half-written file behind.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Any:
        if not self._path.exists():
            return []
        return json.loads(self._path.read_text(encoding="utf-8") or "[]")

    def _read(self) -> list[dict[str, Any]]:
        payload = self._load()
        if isinstance(payload, dict):
            payload = payload.get("records", [])
        if not isinstance(payload, list):
            raise ValueError(f"{self._path} must contain a JSON list of records")
        return [entry for entry in payload if isinstance(entry, dict)]

    def _write(self, records: list[dict[str, Any]]) -> None:
        # Keep a {"records": [...]} envelope if the file had one.
        payload = self._load()
        document: Any = {**payload, "records": records} if isinstance(payload, dict) else records
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(document, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        tmp_path.replace(self._path)

    async def list_records(self) -> list[Record]:
        return [Record.model_validate(raw) for raw in self._read()]

    async def apply_updates(self, updates: Iterable[RecordUpdate]) -> int:
        async with self._lock:
            raw_records = self._read()
            by_id = {str(raw.get("id", "")).strip(): raw for raw in raw_records}
            applied = _merge_updates(by_id, updates)
            if applied:
                ordered = [by_id.get(str(raw.get("id", "")).strip(), raw) for raw in raw_records]
                self._write(ordered)
                logger.info("Wrote %d linkage update(s) to %s", applied, self._path)
            return applied


def _merge_updates(records: dict[str, dict[str, Any]], updates: Iterable[RecordUpdate]) -> int:
    applied = 0
    for update in updates:
        raw = records.get(update.card_id)
        if raw is None:
            logger.debug("Skipping update for unknown record %s", update.card_id)
            continue
        records[update.card_id] = apply_linkage_patch(raw, update.values)
        applied += 1
    return applied
