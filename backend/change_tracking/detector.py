"""
Field-level change detection for SharePoint list items.

`ChangeDetector.compute_delta()` compares freshly fetched fields against the
stored snapshot and writes the new snapshot with a version-conditional update.
When another writer wins the race, the snapshot is re-read and the delta
recomputed, so a delta is never committed against a stale snapshot.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from datetime import timezone as dt_timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from django.utils import timezone
from django.utils.dateparse import parse_datetime

from .store import SnapshotStore, StoredSnapshot, get_snapshot_store

logger = logging.getLogger(__name__)

VERSION_FIELD = "_UIVersionString"

# Fields SharePoint rewrites on every save regardless of what the user edited.
DEFAULT_IGNORED_FIELDS = frozenset(
    {
        "Modified",
        "Editor",
        "EditorLookupId",
        "ItemChildCount",
        "FolderChildCount",
    }
)

_US_DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)$")


def _canonical_number(raw: str) -> str:
    try:
        number = Decimal(raw)
    except InvalidOperation:
        return raw
    if number == 0:
        return "0"
    text = format(number.normalize(), "f")
    return text


def _canonical_datetime(value: datetime) -> str:
    if timezone.is_naive(value):
        value = value.replace(tzinfo=dt_timezone.utc)
    value = value.astimezone(dt_timezone.utc)
    # Date-only columns come back from Graph as midnight UTC.
    if value.hour == 0 and value.minute == 0 and value.second == 0 and value.microsecond == 0:
        return value.date().isoformat()
    return value.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def normalize_value(value: Any) -> str:
    """
    Serialize a field value into the canonical string used for comparison.

    Formatting differences (`1.0` vs `1`, `1/23/2025` vs `2025-01-23`, `True`
    vs `true`, key order in structures) do not register as changes.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, Decimal)):
        return _canonical_number(str(value))
    if isinstance(value, datetime):
        return _canonical_datetime(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)

    text = str(value).strip()
    lowered = text.lower()
    if lowered in ("true", "false"):
        return lowered
    if _NUMBER_RE.match(text):
        return _canonical_number(text)

    match = _US_DATE_RE.match(text)
    if match:
        month, day, year = (int(p) for p in match.groups())
        try:
            return date(year, month, day).isoformat()
        except ValueError:
            return text
    if _ISO_DATE_RE.match(text):
        return text
    if "T" in text:
        try:
            parsed = parse_datetime(text)
        except ValueError:
            parsed = None
        if parsed is not None:
            return _canonical_datetime(parsed)
    return text


def is_tracked_field(name: str, ignored: Iterable[str] = ()) -> bool:
    if not name or name.startswith("_") or "@odata" in name:
        return False
    return name not in DEFAULT_IGNORED_FIELDS and name not in set(ignored)


@dataclass(frozen=True)
class FieldChange:
    old: Any
    new: Any

    @property
    def kind(self) -> str:
        if self.old is None:
            return "added"
        if self.new is None:
            return "removed"
        return "modified"

    def as_dict(self) -> dict[str, Any]:
        return {"old": self.old, "new": self.new}


@dataclass
class ChangeRecord:
    """Delta between two observations of one item. Never persisted."""

    item_id: str
    changed_fields: dict[str, FieldChange] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=timezone.now)
    is_new_item: bool = False
    unknown: bool = False
    previous_fields: dict[str, Any] | None = None
    previous_version: str | None = None
    current_version: str | None = None

    @classmethod
    def unknown_delta(cls, item_id: str) -> "ChangeRecord":
        """Marker used when the snapshot store could not be consulted."""
        return cls(item_id=item_id, unknown=True)

    @property
    def has_changes(self) -> bool:
        return self.unknown or bool(self.changed_fields)

    @property
    def changed_field_names(self) -> list[str]:
        return list(self.changed_fields.keys())

    def as_changes_dict(self) -> dict[str, Any]:
        """Shape used by forwarded envelopes: counts plus added/modified/removed detail."""
        added: dict[str, Any] = {}
        modified: dict[str, Any] = {}
        removed: dict[str, Any] = {}
        for name, change in self.changed_fields.items():
            if change.kind == "added":
                added[name] = change.new
            elif change.kind == "removed":
                removed[name] = change.old
            else:
                modified[name] = change.as_dict()
        return {
            "summary": {
                "addedFields": len(added),
                "modifiedFields": len(modified),
                "removedFields": len(removed),
                "isNewItem": self.is_new_item,
                "unknown": self.unknown,
            },
            "details": {"added": added, "modified": modified, "removed": removed},
        }


def _diff(
    previous: StoredSnapshot | None,
    normalized: dict[str, str],
    fresh: Mapping[str, Any],
) -> dict[str, FieldChange]:
    if previous is None:
        return {name: FieldChange(old=None, new=fresh.get(name)) for name in normalized}

    changes: dict[str, FieldChange] = {}
    old_normalized = previous.fields
    old_raw = previous.raw_fields
    for name, value in normalized.items():
        if old_normalized.get(name, "") != value:
            changes[name] = FieldChange(old=old_raw.get(name), new=fresh.get(name))
    for name, value in old_normalized.items():
        if name not in normalized and value != "":
            changes[name] = FieldChange(old=old_raw.get(name), new=None)
    return changes


class ChangeDetector:
    def __init__(
        self,
        store: SnapshotStore | None = None,
        *,
        ignored_fields: Iterable[str] = (),
        write_attempts: int = 3,
    ):
        self.store = store or get_snapshot_store()
        self.ignored_fields = frozenset(ignored_fields)
        self.write_attempts = max(1, int(write_attempts))

    def tracked_fields(self, fresh_fields: Mapping[str, Any]) -> dict[str, str]:
        return {
            name: normalize_value(value)
            for name, value in fresh_fields.items()
            if is_tracked_field(name, self.ignored_fields)
        }

    def compute_delta(self, list_key: str, item_id: str, fresh_fields: Mapping[str, Any]) -> ChangeRecord:
        """
        Compare `fresh_fields` to the stored snapshot and persist them.

        The first observation of an item reports every tracked field as changed.
        Raises SnapshotStoreUnavailable when the store cannot be reached.
        """
        item_id = str(item_id)
        normalized = self.tracked_fields(fresh_fields)
        raw = {name: fresh_fields.get(name) for name in normalized}
        current_version = str(fresh_fields.get(VERSION_FIELD) or "")

        changes: dict[str, FieldChange] = {}
        previous: StoredSnapshot | None = None
        for attempt in range(1, self.write_attempts + 1):
            previous = self.store.get(list_key, item_id)
            changes = _diff(previous, normalized, fresh_fields)

            if previous is None:
                written = self.store.create(
                    list_key,
                    item_id,
                    fields=normalized,
                    raw_fields=raw,
                    last_seen_version=current_version,
                )
            else:
                written = self.store.update_if_version(
                    list_key,
                    item_id,
                    expected_version=previous.version,
                    fields=normalized,
                    raw_fields=raw,
                    last_seen_version=current_version,
                )
            if written:
                break
            logger.info(
                "Snapshot for %s#%s changed concurrently (attempt %d/%d); recomputing",
                list_key,
                item_id,
                attempt,
                self.write_attempts,
            )
        else:
            logger.warning(
                "Snapshot for %s#%s still contended after %d attempts; overwriting",
                list_key,
                item_id,
                self.write_attempts,
            )
            self.store.put(
                list_key,
                item_id,
                fields=normalized,
                raw_fields=raw,
                last_seen_version=current_version,
            )

        record = ChangeRecord(
            item_id=item_id,
            changed_fields=changes,
            is_new_item=previous is None,
            previous_fields=dict(previous.raw_fields) if previous is not None else None,
            previous_version=(previous.last_seen_version or None) if previous is not None else None,
            current_version=current_version or None,
        )
        logger.debug(
            "Delta for %s#%s: %d changed field(s)%s",
            list_key,
            item_id,
            len(changes),
            " (new item)" if record.is_new_item else "",
        )
        return record

    def seed(self, list_key: str, item_id: str, fresh_fields: Mapping[str, Any]) -> bool:
        """
        Store a baseline snapshot for an item that has none.

        Returns False, leaving the row untouched, when a snapshot already exists.
        """
        item_id = str(item_id)
        if self.store.get(list_key, item_id) is not None:
            return False
        normalized = self.tracked_fields(fresh_fields)
        return self.store.create(
            list_key,
            item_id,
            fields=normalized,
            raw_fields={name: fresh_fields.get(name) for name in normalized},
            last_seen_version=str(fresh_fields.get(VERSION_FIELD) or ""),
        )

    def reset(self, list_key: str, item_id: str | None = None) -> int:
        """Forget stored state so the next observation bootstraps again."""
        deleted = self.store.delete(list_key, None if item_id is None else str(item_id))
        logger.info("Reset %d snapshot(s) for %s%s", deleted, list_key, f"#{item_id}" if item_id else "")
        return deleted

    def cleanup_stale(self, days: int = 30) -> int:
        """Delete snapshots that have not been written for `days` days."""
        days = max(1, int(days))
        cutoff = timezone.now() - timedelta(days=days)
        deleted = self.store.delete_older_than(cutoff)
        logger.info("Deleted %d snapshot(s) older than %d day(s)", deleted, days)
        return deleted
