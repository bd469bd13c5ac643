from __future__ import annotations

from django.test import SimpleTestCase

from relay.exceptions import InvalidFieldValue, MissingRequiredField, UnknownHandler
from relay.processors import (
    get_available_handler_names,
    get_handler,
    register_handler,
    unregister_handler,
)
from relay.processors.base import QueueProcessor
from relay.processors.costco_routing import CostcoRoutingProcessor
from relay.processors.generic_document import DocumentProcessor

COSTCO_ITEM = {
    "id": 4,
    "Status": "Send Generated Form",
    "ShipToEmail": "a@b.com",
    "ShipDate": "1/23/2025",
    "Style": "BR1",
    "PO": "100",
}


class CostcoRoutingProcessorTests(SimpleTestCase):
    def setUp(self):
        self.processor = CostcoRoutingProcessor()

    def test_trigger_status_is_processed(self):
        self.assertTrue(self.processor.should_process(dict(COSTCO_ITEM)))

    def test_other_status_is_not_processed(self):
        self.assertFalse(self.processor.should_process({**COSTCO_ITEM, "Status": "Draft"}))

    def test_unchanged_status_is_not_processed_again(self):
        previous = {"Status": "Send Generated Form"}
        self.assertFalse(self.processor.should_process(dict(COSTCO_ITEM), previous))
        self.assertTrue(self.processor.should_process(dict(COSTCO_ITEM), {"Status": "Draft"}))

    def test_missing_required_fields_block_processing(self):
        item = {**COSTCO_ITEM, "Style": ""}
        self.assertFalse(self.processor.should_process(item))
        with self.assertRaises(MissingRequiredField) as ctx:
            self.processor.validate_required(item)
        self.assertEqual(ctx.exception.fields, ["Style"])

    def test_alias_field_names(self):
        item = {
            "id": 9,
            "Status": "Send Generated Form",
            "Ship_x002d_toEmail": "ops@example.com",
            "Ship_x0020_Date": "2025-02-01",
            "Style": "X",
            "PO_No": "A-1",
        }
        self.processor.validate_required(item)
        content = self.processor.transform(item)
        self.assertEqual(content["PONumber"], "A-1")
        self.assertEqual(content["ShipDate"], "2025-02-01")

    def test_field_format_validation(self):
        cases = [
            ({"ShipToEmail": "not-an-email"}, "ShipToEmail"),
            ({"ShipDate": "next tuesday"}, "ShipDate"),
            ({"ShipDate": "2/30/2025"}, "ShipDate"),
            ({"PO": "100#2"}, "PO"),
        ]
        for override, field_name in cases:
            with self.subTest(field=field_name, value=override):
                with self.assertRaises(InvalidFieldValue) as ctx:
                    self.processor.validate_required({**COSTCO_ITEM, **override})
                self.assertEqual(ctx.exception.field, field_name)

    def test_transform_emits_exactly_the_canonical_keys(self):
        item = {**COSTCO_ITEM, "Style": "<b>BR1</b>", "Notes": "ignored"}
        self.processor.validate_required(item)
        content = self.processor.transform(item)

        self.assertEqual(
            content,
            {
                "SharePointItemId": "4",
                "PONumber": "100",
                "Style": "BR1",
                "ShipDate": "2025-01-23",
                "Status": "Send Generated Form",
            },
        )
        for key, value in content.items():
            self.assertNotIn("@", key)
            self.assertNotIn("<", str(value))

    def test_reference_parts(self):
        self.assertEqual(self.processor.reference_parts(COSTCO_ITEM), ["100", "4"])


class DocumentProcessorTests(SimpleTestCase):
    ITEM = {
        "id": "7",
        "webUrl": "https://contoso.sharepoint.com/sites/docs/Shared%20Documents/a.pdf",
        "createdDateTime": "2025-01-01T00:00:00Z",
        "lastModifiedDateTime": "2025-01-02T00:00:00Z",
        "Title": "Invoice",
        "FileLeafRef": "a.pdf",
        "FileRef": "/sites/docs/Shared Documents/a.pdf",
        "Author": {"Email": "alice@example.com", "Title": "Alice"},
        "Editor": {"Title": "Bob"},
        "LinkTitle": "Invoice",
        "Department": "Finance",
        "_ComplianceFlags": "",
        "@odata.etag": "\"1\"",
    }

    def test_any_item_is_processed_without_extension_filter(self):
        processor = DocumentProcessor()
        self.assertTrue(processor.should_process(dict(self.ITEM)))
        self.assertFalse(processor.should_process({}))

    def test_extension_filter(self):
        processor = DocumentProcessor(allowed_extensions=[".PDF"])
        self.assertTrue(processor.should_process({"id": "1", "FileLeafRef": "scan.pdf"}))
        self.assertFalse(processor.should_process({"id": "1", "FileLeafRef": "notes.docx"}))

    def test_transform_base_metadata_and_remaining_fields(self):
        content = DocumentProcessor().transform(dict(self.ITEM))

        self.assertEqual(list(content)[:5], ["ItemId", "Title", "WebUrl", "Created", "LastModified"])
        self.assertEqual(content["ItemId"], "7")
        self.assertEqual(content["FileName"], "a.pdf")
        self.assertEqual(content["FilePath"], "/sites/docs/Shared Documents/a.pdf")
        self.assertEqual(content["CreatedBy"], "alice@example.com")
        self.assertEqual(content["ModifiedBy"], "Bob")
        self.assertEqual(content["Department"], "Finance")
        for dropped in ("LinkTitle", "_ComplianceFlags", "@odata.etag", "Author", "FileLeafRef"):
            self.assertNotIn(dropped, content)

    def test_item_without_id_is_rejected(self):
        with self.assertRaises(MissingRequiredField):
            DocumentProcessor().validate_required({"Title": "x"})

    def test_reference_parts(self):
        processor = DocumentProcessor()
        self.assertEqual(processor.reference_parts(self.ITEM), ["a.pdf", "7"])
        self.assertEqual(processor.reference_parts({"id": "3"}), ["ITEM", "3"])


class _EchoProcessor:
    name = "echo"
    priority = "Low"
    reference_prefix = "ECHO"
    default_queue = "Echo"

    def should_process(self, item, previous_item=None):
        return True

    def validate_required(self, item):
        return None

    def transform(self, item):
        return dict(item)

    def reference_parts(self, item):
        return [str(item.get("id"))]


class RegistryTests(SimpleTestCase):
    def tearDown(self):
        unregister_handler("echo")
        unregister_handler("echo-alias")

    def test_builtin_handlers_and_aliases(self):
        self.assertIsInstance(get_handler("costco"), CostcoRoutingProcessor)
        self.assertIsInstance(get_handler("Costco-Style"), CostcoRoutingProcessor)
        self.assertIsInstance(get_handler("generic-document"), DocumentProcessor)
        self.assertEqual(
            get_available_handler_names(),
            ["costco", "costco-style", "document", "generic-document"],
        )

    def test_builtins_satisfy_protocol(self):
        for name in ("document", "costco-style"):
            self.assertIsInstance(get_handler(name), QueueProcessor)

    def test_unknown_handler(self):
        with self.assertRaises(UnknownHandler):
            get_handler("nope")

    def test_register_custom_handler(self):
        register_handler("echo", _EchoProcessor, aliases=["echo-alias"])
        self.assertIsInstance(get_handler("echo-alias"), _EchoProcessor)
        self.assertIn("echo", get_available_handler_names())

    def test_duplicate_registration_is_rejected(self):
        with self.assertRaises(ValueError):
            register_handler("costco", _EchoProcessor)
        register_handler("echo", _EchoProcessor)
        with self.assertRaises(ValueError):
            register_handler("echo", _EchoProcessor)
