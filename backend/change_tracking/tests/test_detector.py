from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

from django.db import DatabaseError
from django.test import TestCase
from django.utils import timezone

from change_tracking.detector import ChangeDetector
from change_tracking.exceptions import SnapshotStoreUnavailable
from change_tracking.models import ItemSnapshot
from change_tracking.store import SnapshotStore

LIST_KEY = "sites/contoso/lists/orders"


class ComputeDeltaTests(TestCase):
    """Delta computation against the stored snapshot."""

    def setUp(self):
        self.detector = ChangeDetector(SnapshotStore())

    def test_first_observation_reports_every_field(self):
        fields = {"Title": "Order 4", "Status": "Draft", "Qty": 3, "_UIVersionString": "1.0"}
        record = self.detector.compute_delta(LIST_KEY, "4", fields)

        self.assertTrue(record.is_new_item)
        self.assertEqual(set(record.changed_field_names), {"Title", "Status", "Qty"})
        self.assertIsNone(record.changed_fields["Status"].old)
        self.assertEqual(record.changed_fields["Qty"].new, 3)

        snapshot = ItemSnapshot.objects.get(list_key=LIST_KEY, item_id="4")
        self.assertEqual(snapshot.fields, {"Title": "Order 4", "Status": "Draft", "Qty": "3"})
        self.assertEqual(snapshot.last_seen_version, "1.0")
        self.assertEqual(snapshot.version, 1)

    def test_same_fields_twice_yield_empty_delta(self):
        fields = {"Title": "Order 4", "Status": "Draft"}
        self.detector.compute_delta(LIST_KEY, "4", fields)
        record = self.detector.compute_delta(LIST_KEY, "4", dict(fields))

        self.assertFalse(record.is_new_item)
        self.assertEqual(record.changed_fields, {})
        self.assertFalse(record.has_changes)

    def test_formatting_only_differences_are_not_changes(self):
        self.detector.compute_delta(LIST_KEY, "4", {"Qty": "3.0", "ShipDate": "1/23/2025", "Rush": "True"})
        record = self.detector.compute_delta(
            LIST_KEY, "4", {"Qty": 3, "ShipDate": "2025-01-23T00:00:00Z", "Rush": True}
        )
        self.assertEqual(record.changed_fields, {})

    def test_single_field_change(self):
        self.detector.compute_delta(LIST_KEY, "4", {"Title": "Order 4", "Status": "Draft"})
        record = self.detector.compute_delta(
            LIST_KEY, "4", {"Title": "Order 4", "Status": "Send Generated Form"}
        )

        self.assertEqual(record.changed_field_names, ["Status"])
        change = record.changed_fields["Status"]
        self.assertEqual(change.old, "Draft")
        self.assertEqual(change.new, "Send Generated Form")
        self.assertEqual(change.kind, "modified")
        self.assertEqual(record.previous_fields, {"Title": "Order 4", "Status": "Draft"})

    def test_removed_field_is_reported(self):
        self.detector.compute_delta(LIST_KEY, "4", {"Title": "Order 4", "Notes": "rush"})
        record = self.detector.compute_delta(LIST_KEY, "4", {"Title": "Order 4"})

        self.assertEqual(record.changed_field_names, ["Notes"])
        self.assertEqual(record.changed_fields["Notes"].kind, "removed")

    def test_system_and_ignored_fields_do_not_count(self):
        detector = ChangeDetector(SnapshotStore(), ignored_fields=["Notes"])
        detector.compute_delta(LIST_KEY, "4", {"Title": "A", "Notes": "x", "_UIVersionString": "1.0"})
        record = detector.compute_delta(
            LIST_KEY,
            "4",
            {"Title": "A", "Notes": "y", "_UIVersionString": "2.0", "@odata.etag": "abc", "Modified": "now"},
        )
        self.assertEqual(record.changed_fields, {})
        self.assertEqual(record.previous_version, "1.0")
        self.assertEqual(record.current_version, "2.0")

    def test_changes_dict_shape(self):
        self.detector.compute_delta(LIST_KEY, "4", {"Status": "Draft", "Notes": "x"})
        record = self.detector.compute_delta(LIST_KEY, "4", {"Status": "Done", "Style": "BR1"})

        changes = record.as_changes_dict()
        self.assertEqual(changes["summary"]["addedFields"], 1)
        self.assertEqual(changes["summary"]["modifiedFields"], 1)
        self.assertEqual(changes["summary"]["removedFields"], 1)
        self.assertEqual(changes["details"]["added"], {"Style": "BR1"})
        self.assertEqual(changes["details"]["modified"], {"Status": {"old": "Draft", "new": "Done"}})
        self.assertEqual(changes["details"]["removed"], {"Notes": "x"})


class _RacingStore(SnapshotStore):
    """Lets a competing writer commit between our read and our conditional write."""

    def __init__(self, competing_fields: dict):
        self.competing_fields = competing_fields
        self.competing_record = None
        self.conditional_writes = 0

    def update_if_version(self, *args, **kwargs):
        self.conditional_writes += 1
        if self.competing_record is None:
            self.competing_record = ChangeDetector(SnapshotStore()).compute_delta(
                LIST_KEY, "4", self.competing_fields
            )
        return super().update_if_version(*args, **kwargs)


class _AlwaysLosingStore(SnapshotStore):
    def __init__(self):
        self.put_calls = 0

    def update_if_version(self, *args, **kwargs):
        return False

    def put(self, *args, **kwargs):
        self.put_calls += 1
        return super().put(*args, **kwargs)


class ConcurrentUpdateTests(TestCase):
    """Two notifications for the same item racing on the snapshot."""

    def setUp(self):
        ChangeDetector(SnapshotStore()).compute_delta(LIST_KEY, "4", {"Status": "Draft", "Style": "BR1"})

    def test_lost_race_recomputes_against_fresh_snapshot(self):
        store = _RacingStore({"Status": "Approved", "Style": "BR1"})
        detector = ChangeDetector(store)

        record = detector.compute_delta(LIST_KEY, "4", {"Status": "Approved", "Style": "BR2"})

        self.assertEqual(store.conditional_writes, 2)
        self.assertEqual(store.competing_record.changed_field_names, ["Status"])
        # The competing writer already captured the status change.
        self.assertEqual(record.changed_field_names, ["Style"])

        snapshot = ItemSnapshot.objects.get(list_key=LIST_KEY, item_id="4")
        self.assertEqual(snapshot.fields, {"Status": "Approved", "Style": "BR2"})
        self.assertEqual(snapshot.version, 3)

    def test_exhausted_retries_fall_back_to_last_writer_wins(self):
        store = _AlwaysLosingStore()
        detector = ChangeDetector(store, write_attempts=2)

        record = detector.compute_delta(LIST_KEY, "4", {"Status": "Done", "Style": "BR1"})

        self.assertEqual(record.changed_field_names, ["Status"])
        self.assertEqual(store.put_calls, 1)
        snapshot = ItemSnapshot.objects.get(list_key=LIST_KEY, item_id="4")
        self.assertEqual(snapshot.fields["Status"], "Done")


class SnapshotMaintenanceTests(TestCase):
    def setUp(self):
        self.detector = ChangeDetector(SnapshotStore())
        self.detector.compute_delta(LIST_KEY, "1", {"Title": "one"})
        self.detector.compute_delta(LIST_KEY, "2", {"Title": "two"})
        self.detector.compute_delta("sites/other/lists/x", "1", {"Title": "other"})

    def test_reset_single_item_bootstraps_again(self):
        self.assertEqual(self.detector.reset(LIST_KEY, "1"), 1)
        record = self.detector.compute_delta(LIST_KEY, "1", {"Title": "one"})
        self.assertTrue(record.is_new_item)

    def test_reset_whole_list(self):
        self.assertEqual(self.detector.reset(LIST_KEY), 2)
        self.assertEqual(ItemSnapshot.objects.count(), 1)

    def test_cleanup_stale_removes_old_rows_only(self):
        ItemSnapshot.objects.filter(item_id="2", list_key=LIST_KEY).update(
            updated_at=timezone.now() - timedelta(days=45)
        )
        deleted = self.detector.cleanup_stale(days=30)
        self.assertEqual(deleted, 1)
        self.assertFalse(ItemSnapshot.objects.filter(list_key=LIST_KEY, item_id="2").exists())
        self.assertEqual(ItemSnapshot.objects.count(), 2)


class SnapshotStoreFailureTests(TestCase):
    def test_database_errors_surface_as_store_unavailable(self):
        detector = ChangeDetector(SnapshotStore())
        with patch.object(ItemSnapshot.objects, "filter", side_effect=DatabaseError("down")):
            with self.assertRaises(SnapshotStoreUnavailable) as ctx:
                detector.compute_delta(LIST_KEY, "9", {"Title": "x"})
        self.assertEqual(ctx.exception.error_code, "SNAPSHOT_STORE_UNAVAILABLE")
