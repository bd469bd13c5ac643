from __future__ import annotations

from datetime import timedelta
from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase, override_settings
from django.utils import timezone

from change_tracking.detector import ChangeDetector
from change_tracking.models import ItemSnapshot
from integrations_sharepoint.exceptions import ItemUnavailable
from integrations_sharepoint.graph import SharePointItem


class SnapshotCommandTests(TestCase):
    def setUp(self):
        now = timezone.now()
        ItemSnapshot.objects.create(list_key="lists/a", item_id="1", updated_at=now)
        ItemSnapshot.objects.create(list_key="lists/a", item_id="2", updated_at=now - timedelta(days=10))
        ItemSnapshot.objects.create(list_key="lists/b", item_id="1", updated_at=now - timedelta(days=90))

    def test_cleanup_with_explicit_days(self):
        out = StringIO()
        call_command("cleanup_snapshots", "--days", "7", stdout=out)
        self.assertIn("Deleted 2 snapshot(s)", out.getvalue())
        self.assertEqual(ItemSnapshot.objects.count(), 1)

    @override_settings(RELAY={"snapshot_retention_days": 30})
    def test_cleanup_uses_configured_retention(self):
        out = StringIO()
        call_command("cleanup_snapshots", stdout=out)
        self.assertIn("older than 30 day(s)", out.getvalue())
        self.assertEqual(ItemSnapshot.objects.count(), 2)

    def test_reset_single_item(self):
        out = StringIO()
        call_command("reset_snapshots", "lists/a", "--item-id", "2", stdout=out)
        self.assertIn("lists/a#2", out.getvalue())
        self.assertEqual(ItemSnapshot.objects.filter(list_key="lists/a").count(), 1)

    def test_reset_list(self):
        call_command("reset_snapshots", "lists/a", stdout=StringIO())
        self.assertEqual(ItemSnapshot.objects.count(), 1)


RESOURCE = "sites/contoso.sharepoint.com,1111,2222/lists/Orders"
LIST_KEY = RESOURCE.lower()


@patch("change_tracking.management.commands.initialize_snapshots.SharePointGraphClient")
class InitializeSnapshotsCommandTests(TestCase):
    def setUp(self):
        ItemSnapshot.objects.create(
            list_key=LIST_KEY,
            item_id="2",
            fields={"Status": "Shipped"},
            raw_fields={"Status": "Shipped"},
            last_seen_version="7.0",
            version=4,
        )

    def _items(self):
        return [
            SharePointItem(item_id="1", fields={"Title": "Order 1", "Status": "Draft", "_UIVersionString": "1.0"}),
            SharePointItem(item_id="2", fields={"Title": "Order 2", "Status": "Draft"}),
            SharePointItem(item_id="3", fields={"Title": "Order 3", "Modified": "2025-01-21T10:00:00Z"}),
        ]

    def test_seeds_missing_items_and_skips_existing(self, mock_client_cls):
        mock_client_cls.return_value.iter_items.return_value = iter(self._items())
        out = StringIO()

        call_command("initialize_snapshots", RESOURCE, "--page-size", "50", stdout=out)

        self.assertIn(f"Initialized 2 snapshot(s) for {LIST_KEY}; 1 already present", out.getvalue())
        args, kwargs = mock_client_cls.return_value.iter_items.call_args
        self.assertEqual(args[0].list_key, LIST_KEY)
        self.assertEqual(kwargs["page_size"], 50)

        first = ItemSnapshot.objects.get(list_key=LIST_KEY, item_id="1")
        self.assertEqual(first.fields, {"Title": "Order 1", "Status": "Draft"})
        self.assertEqual(first.last_seen_version, "1.0")
        self.assertEqual(first.version, 1)
        self.assertNotIn("Modified", ItemSnapshot.objects.get(list_key=LIST_KEY, item_id="3").fields)

        untouched = ItemSnapshot.objects.get(list_key=LIST_KEY, item_id="2")
        self.assertEqual(untouched.fields, {"Status": "Shipped"})
        self.assertEqual(untouched.version, 4)

    def test_seeded_item_reports_a_real_delta_next_time(self, mock_client_cls):
        mock_client_cls.return_value.iter_items.return_value = iter(self._items()[:1])
        call_command("initialize_snapshots", RESOURCE, stdout=StringIO())

        record = ChangeDetector().compute_delta(LIST_KEY, "1", {"Title": "Order 1", "Status": "Approved"})

        self.assertFalse(record.is_new_item)
        self.assertEqual(record.changed_field_names, ["Status"])

    def test_item_locator_is_rejected(self, mock_client_cls):
        with self.assertRaises(CommandError):
            call_command("initialize_snapshots", f"{RESOURCE}/items/4", stdout=StringIO())
        mock_client_cls.return_value.iter_items.assert_not_called()

    def test_unparseable_locator_is_rejected(self, mock_client_cls):
        with self.assertRaises(CommandError):
            call_command("initialize_snapshots", "not-a-list", stdout=StringIO())

    def test_graph_failure_becomes_command_error(self, mock_client_cls):
        mock_client_cls.return_value.iter_items.side_effect = ItemUnavailable("Graph returned HTTP 503", status_code=503)
        with self.assertRaises(CommandError):
            call_command("initialize_snapshots", RESOURCE, stdout=StringIO())
