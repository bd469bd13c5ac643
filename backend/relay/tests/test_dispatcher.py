from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

from django.test import TestCase

from change_tracking.detector import ChangeDetector
from change_tracking.exceptions import SnapshotStoreUnavailable
from change_tracking.store import SnapshotStore
from integrations_sharepoint.exceptions import ItemUnavailable
from integrations_sharepoint.graph import SharePointItem
from integrations_uipath.client import QueueSubmission, UiPathQueueClient
from relay.config import RelayConfig
from relay.directives import MODE_SIMPLE
from relay.dispatcher import Notification, NotificationDispatcher
from relay.forwarder import ForwardResult

RESOURCE = "sites/contoso.sharepoint.com,abc,def/lists/orders-list/items/4"

COSTCO_FIELDS = {
    "Title": "Order 4",
    "Status": "Send Generated Form",
    "ShipToEmail": "a@b.com",
    "ShipDate": "1/23/2025",
    "Style": "BR1",
    "PO": "100",
}


class _FakeGraph:
    def __init__(self, fields_by_id: dict[str, dict]):
        self.fields_by_id = fields_by_id
        self.connection = SimpleNamespace(site_base_url="https://contoso.sharepoint.com")
        self.fetches = 0

    def fetch_item(self, resource):
        self.fetches += 1
        fields = self.fields_by_id.get(resource.item_id)
        if fields is None:
            raise ItemUnavailable("Item not found", status_code=404)
        return SharePointItem(item_id=resource.item_id, fields=dict(fields))


def _entry(client_state: str, *, resource: str = RESOURCE, change_type: str = "updated") -> dict:
    return {
        "subscriptionId": "sub-1",
        "clientState": client_state,
        "resource": resource,
        "changeType": change_type,
        "tenantId": "tenant",
    }


class DispatcherTestCase(TestCase):
    def setUp(self):
        self.graph = _FakeGraph({"4": dict(COSTCO_FIELDS)})
        self.forwarder = MagicMock()
        self.forwarder.forward.return_value = ForwardResult(url="https://hooks.test/in", mode="simple", status_code=200)
        self.payloads = []
        self.dispatcher = NotificationDispatcher(
            RelayConfig(),
            graph_client=self.graph,
            detector=ChangeDetector(SnapshotStore()),
            forwarder=self.forwarder,
            queue_client_factory=self._queue_client,
        )

    def _queue_client(self, connection):
        client = UiPathQueueClient(connection, token_cache=MagicMock())
        client.submit = MagicMock(side_effect=self._submit)
        return client

    def _submit(self, payload):
        self.payloads.append(payload)
        return QueueSubmission(
            queue_name=payload.target_name,
            reference=payload.reference,
            attempts=1,
            status_code=201,
            queue_item_id=len(self.payloads),
        )

    def dispatch(self, client_state: str, **kwargs):
        return self.dispatcher.dispatch(Notification.from_payload(_entry(client_state, **kwargs)))


class BatchIsolationTests(DispatcherTestCase):
    def test_one_bad_entry_does_not_affect_siblings(self):
        batch = self.dispatcher.dispatch_batch(
            [
                _entry("destination:queue|foo"),
                "not-an-object",
                _entry("destination:queue|handler:costco-style"),
            ]
        )

        self.assertEqual(batch.total, 3)
        self.assertEqual(batch.processed, 1)
        self.assertEqual(
            [(r.status, r.code) for r in batch.results],
            [("failed", "MALFORMED_DIRECTIVE"), ("failed", "INVALID_NOTIFICATION"), ("succeeded", None)],
        )
        self.assertEqual(len(self.payloads), 1)

    def test_batch_dict_shape(self):
        data = self.dispatcher.dispatch_batch([_entry("")]).as_dict()
        self.assertEqual(set(data), {"message", "total", "processed", "results"})
        self.assertEqual(data["results"][0]["reason"], "no_destination")


class QueueDispatchTests(DispatcherTestCase):
    def test_costco_item_is_queued(self):
        result = self.dispatch("destination:queue|handler:costco-style")

        self.assertEqual(result.status, "succeeded")
        self.assertEqual(result.item_id, "4")
        payload = self.payloads[0]
        self.assertEqual(payload.target_name, "COSTCO-INLINE-Routing")
        self.assertEqual(payload.priority, "High")
        self.assertRegex(payload.reference, r"^COSTCO_100_4_\d+$")
        self.assertEqual(
            set(payload.content),
            {"SharePointItemId", "PONumber", "Style", "ShipDate", "Status"},
        )
        self.assertEqual(result.detail["queue"], "COSTCO-INLINE-Routing")

    def test_directive_queue_overrides_handler_default(self):
        self.dispatch("processor:costco;uipath:OtherQueue")
        self.assertEqual(self.payloads[0].target_name, "OtherQueue")

    def test_draft_status_is_skipped_without_submission(self):
        self.graph.fields_by_id["4"]["Status"] = "Draft"
        result = self.dispatch("destination:queue|handler:costco-style")

        self.assertEqual(result.status, "skipped")
        self.assertEqual(result.code, "handler_declined")
        self.assertEqual(self.payloads, [])

    def test_invalid_field_value_fails(self):
        self.graph.fields_by_id["4"]["ShipToEmail"] = "nobody"
        result = self.dispatch("destination:queue|handler:costco-style")

        self.assertEqual(result.status, "failed")
        self.assertEqual(result.code, "INVALID_FIELD_VALUE")
        self.assertEqual(self.payloads, [])

    def test_unknown_handler_fails_before_fetch(self):
        result = self.dispatch("destination:queue|handler:nope")

        self.assertEqual(result.code, "UNKNOWN_HANDLER")
        self.assertEqual(self.graph.fetches, 0)

    def test_missing_queue_is_a_configuration_error(self):
        with self.settings(UIPATH={"default_queue": ""}):
            result = self.dispatch("destination:queue|handler:document")
        self.assertEqual(result.code, "CONFIGURATION_ERROR")

    def test_item_unavailable(self):
        result = self.dispatch(
            "destination:queue|handler:document|queue:Docs",
            resource="sites/contoso/lists/orders/items/99",
        )
        self.assertEqual(result.code, "ITEM_UNAVAILABLE")

    def test_unparseable_resource(self):
        result = self.dispatch("destination:queue|handler:document|queue:Docs", resource="subscriptions/abc")
        self.assertEqual(result.code, "INVALID_NOTIFICATION")

    def test_deleted_item_is_not_queued(self):
        result = self.dispatch("destination:queue|handler:costco-style", change_type="deleted")

        self.assertEqual(result.status, "skipped")
        self.assertEqual(result.code, "unsupported_change_type")
        self.assertEqual(self.graph.fetches, 0)


class ChangeDetectionDispatchTests(DispatcherTestCase):
    DIRECTIVE = "destination:queue|handler:document|queue:Docs|changes:enabled"

    def test_unchanged_update_is_suppressed(self):
        first = self.dispatch(self.DIRECTIVE)
        second = self.dispatch(self.DIRECTIVE)

        self.assertEqual(first.status, "succeeded")
        self.assertIn("ChangedFields", self.payloads[0].content)
        self.assertEqual(second.status, "skipped")
        self.assertEqual(second.code, "unchanged")
        self.assertEqual(len(self.payloads), 1)

    def test_changed_fields_are_attached(self):
        self.dispatch(self.DIRECTIVE)
        self.graph.fields_by_id["4"]["Title"] = "Order 4 (rev)"
        result = self.dispatch(self.DIRECTIVE)

        self.assertEqual(result.status, "succeeded")
        self.assertEqual(result.changed_fields, ["Title"])
        self.assertEqual(self.payloads[-1].content["ChangedFields"], "Title")

    def test_unchanged_update_dispatched_when_suppression_disabled(self):
        self.dispatcher = NotificationDispatcher(
            RelayConfig(suppress_unchanged_updates=False),
            graph_client=self.graph,
            detector=ChangeDetector(SnapshotStore()),
            forwarder=self.forwarder,
            queue_client_factory=self._queue_client,
        )
        self.dispatch(self.DIRECTIVE)
        result = self.dispatch(self.DIRECTIVE)

        self.assertEqual(result.status, "succeeded")
        self.assertEqual(len(self.payloads), 2)

    def test_costco_status_transition_only_queued_once(self):
        directive = "destination:queue|handler:costco-style|changes:enabled"
        self.graph.fields_by_id["4"]["Status"] = "Draft"
        self.assertEqual(self.dispatch(directive).code, "handler_declined")

        self.graph.fields_by_id["4"]["Status"] = "Send Generated Form"
        self.assertEqual(self.dispatch(directive).status, "succeeded")

        self.graph.fields_by_id["4"]["Style"] = "BR2"
        self.assertEqual(self.dispatch(directive).code, "handler_declined")
        self.assertEqual(len(self.payloads), 1)

    def test_snapshot_store_outage_dispatches_with_unknown_delta(self):
        detector = MagicMock()
        detector.compute_delta.side_effect = SnapshotStoreUnavailable("db down")
        self.dispatcher = NotificationDispatcher(
            RelayConfig(),
            graph_client=self.graph,
            detector=detector,
            forwarder=self.forwarder,
            queue_client_factory=self._queue_client,
        )
        result = self.dispatch(self.DIRECTIVE)

        self.assertEqual(result.status, "succeeded")
        self.assertTrue(result.unknown_delta)
        self.assertEqual(self.dispatcher.stats.as_dict()["unknown_deltas"], 1)

    def test_detection_without_destination(self):
        result = self.dispatch("detect-changes")

        self.assertEqual(result.status, "skipped")
        self.assertEqual(result.code, "no_destination")
        self.assertEqual(set(result.changed_fields), set(COSTCO_FIELDS))


class ForwardDispatchTests(DispatcherTestCase):
    def test_simple_mode_does_not_fetch(self):
        result = self.dispatch("forward:https://hooks.test/in")

        self.assertEqual(result.status, "succeeded")
        self.assertEqual(self.graph.fetches, 0)
        _, kwargs = self.forwarder.forward.call_args
        self.assertIsNone(kwargs["item"])

    def test_with_changes_passes_item_and_delta(self):
        self.dispatch("forward:https://hooks.test/in|mode:withChanges")

        _, kwargs = self.forwarder.forward.call_args
        self.assertEqual(kwargs["item"]["Status"], "Send Generated Form")
        self.assertTrue(kwargs["change"].is_new_item)

    def test_deleted_item_is_forwarded_in_simple_mode(self):
        result = self.dispatch("forward:https://hooks.test/in|mode:withData", change_type="deleted")

        self.assertEqual(result.status, "succeeded")
        args, kwargs = self.forwarder.forward.call_args
        self.assertEqual(args[0].mode, MODE_SIMPLE)
        self.assertIsNone(kwargs["item"])

    def test_unexpected_error_is_contained(self):
        self.forwarder.forward.side_effect = RuntimeError("boom")
        result = self.dispatch("forward:https://hooks.test/in")

        self.assertEqual(result.status, "failed")
        self.assertEqual(result.code, "UNKNOWN_ERROR")


class StatsTests(DispatcherTestCase):
    def test_outcomes_are_counted(self):
        self.dispatcher.dispatch_batch(
            [
                _entry("destination:queue|handler:costco-style"),
                _entry("destination:queue|handler:nope"),
                _entry(""),
            ]
        )
        stats = self.dispatcher.get_status()["stats"]

        self.assertEqual(stats["batches"], 1)
        self.assertEqual(stats["notifications"], 3)
        self.assertEqual((stats["succeeded"], stats["failed"], stats["skipped"]), (1, 1, 1))
        self.assertEqual(stats["failures_by_code"], {"UNKNOWN_HANDLER": 1})
        self.assertEqual(stats["by_destination"]["queue"]["succeeded"], 1)
