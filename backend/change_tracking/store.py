"""
Persistence for item snapshots.

Writes are conditional on the stored `version` so two processes racing on the
same item cannot both commit a delta computed from the same snapshot. The
database provides the atomicity; nothing here takes an in-process lock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from .exceptions import SnapshotStoreUnavailable
from .models import ItemSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredSnapshot:
    """Read-only view of a snapshot row."""

    list_key: str
    item_id: str
    fields: dict[str, str] = field(default_factory=dict)
    raw_fields: dict = field(default_factory=dict)
    last_seen_version: str = ""
    version: int = 1
    updated_at: datetime | None = None


def _to_stored(row: ItemSnapshot) -> StoredSnapshot:
    return StoredSnapshot(
        list_key=row.list_key,
        item_id=row.item_id,
        fields=dict(row.fields or {}),
        raw_fields=dict(row.raw_fields or {}),
        last_seen_version=row.last_seen_version or "",
        version=int(row.version),
        updated_at=row.updated_at,
    )


class SnapshotStore:
    """ORM-backed snapshot store keyed by (list_key, item_id)."""

    def get(self, list_key: str, item_id: str) -> StoredSnapshot | None:
        try:
            row = ItemSnapshot.objects.filter(list_key=list_key, item_id=item_id).first()
        except DatabaseError as exc:
            raise SnapshotStoreUnavailable(f"Failed to read snapshot {list_key}#{item_id}: {exc}") from exc
        return _to_stored(row) if row is not None else None

    def create(
        self,
        list_key: str,
        item_id: str,
        *,
        fields: dict[str, str],
        raw_fields: dict,
        last_seen_version: str = "",
    ) -> bool:
        """
        Insert the first snapshot for an item.

        Returns False when another writer created the row first.
        """
        try:
            with transaction.atomic():
                ItemSnapshot.objects.create(
                    list_key=list_key,
                    item_id=item_id,
                    fields=fields,
                    raw_fields=raw_fields,
                    last_seen_version=last_seen_version or "",
                    version=1,
                    updated_at=timezone.now(),
                )
        except IntegrityError:
            return False
        except DatabaseError as exc:
            raise SnapshotStoreUnavailable(f"Failed to create snapshot {list_key}#{item_id}: {exc}") from exc
        return True

    def update_if_version(
        self,
        list_key: str,
        item_id: str,
        *,
        expected_version: int,
        fields: dict[str, str],
        raw_fields: dict,
        last_seen_version: str = "",
    ) -> bool:
        """
        Overwrite a snapshot only if it is still at `expected_version`.

        Returns False when the row moved on (or vanished) since it was read.
        """
        try:
            updated = ItemSnapshot.objects.filter(
                list_key=list_key,
                item_id=item_id,
                version=expected_version,
            ).update(
                fields=fields,
                raw_fields=raw_fields,
                last_seen_version=last_seen_version or "",
                version=F("version") + 1,
                updated_at=timezone.now(),
            )
        except DatabaseError as exc:
            raise SnapshotStoreUnavailable(f"Failed to update snapshot {list_key}#{item_id}: {exc}") from exc
        return updated == 1

    def put(
        self,
        list_key: str,
        item_id: str,
        *,
        fields: dict[str, str],
        raw_fields: dict,
        last_seen_version: str = "",
    ) -> None:
        """Unconditional upsert (last writer wins)."""
        try:
            with transaction.atomic():
                updated = ItemSnapshot.objects.filter(list_key=list_key, item_id=item_id).update(
                    fields=fields,
                    raw_fields=raw_fields,
                    last_seen_version=last_seen_version or "",
                    version=F("version") + 1,
                    updated_at=timezone.now(),
                )
                if not updated:
                    ItemSnapshot.objects.create(
                        list_key=list_key,
                        item_id=item_id,
                        fields=fields,
                        raw_fields=raw_fields,
                        last_seen_version=last_seen_version or "",
                        updated_at=timezone.now(),
                    )
        except DatabaseError as exc:
            raise SnapshotStoreUnavailable(f"Failed to write snapshot {list_key}#{item_id}: {exc}") from exc

    def delete(self, list_key: str, item_id: str | None = None) -> int:
        """Delete one item's snapshot, or every snapshot of a list when `item_id` is None."""
        qs = ItemSnapshot.objects.filter(list_key=list_key)
        if item_id is not None:
            qs = qs.filter(item_id=item_id)
        try:
            deleted, _ = qs.delete()
        except DatabaseError as exc:
            raise SnapshotStoreUnavailable(f"Failed to delete snapshots for {list_key}: {exc}") from exc
        return deleted

    def delete_older_than(self, cutoff: datetime) -> int:
        try:
            deleted, _ = ItemSnapshot.objects.filter(updated_at__lt=cutoff).delete()
        except DatabaseError as exc:
            raise SnapshotStoreUnavailable(f"Failed to delete stale snapshots: {exc}") from exc
        return deleted


_store: SnapshotStore | None = None


def get_snapshot_store() -> SnapshotStore:
    global _store
    if _store is None:
        _store = SnapshotStore()
    return _store
