"""
Generic document processor.

Queues any item (optionally only files with allowed extensions) with its
base metadata plus the remaining list fields.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from integrations_uipath.sanitize import clean_value
from relay.exceptions import MissingRequiredField

# Item properties and SharePoint bookkeeping columns that are either emitted
# as base metadata or carry nothing useful for a robot.
EXCLUDED_FIELDS = frozenset(
    {
        "id",
        "ID",
        "webUrl",
        "createdDateTime",
        "lastModifiedDateTime",
        "Title",
        "Created",
        "Modified",
        "FileLeafRef",
        "FileRef",
        "FileDirRef",
        "DocIcon",
        "LinkFilename",
        "LinkFilenameNoMenu",
        "LinkTitle",
        "LinkTitleNoMenu",
        "Edit",
        "ItemChildCount",
        "FolderChildCount",
        "AppAuthorLookupId",
        "AppEditorLookupId",
        "AuthorLookupId",
        "EditorLookupId",
        "Attachments",
        "ContentType",
    }
)


def _person(value: Any) -> str:
    if isinstance(value, dict):
        return str(value.get("Email") or value.get("Title") or value.get("LookupValue") or "")
    return "" if value is None else str(value)


class DocumentProcessor:
    name = "document"
    priority = "Normal"
    reference_prefix = "SPDOC"
    default_queue = ""

    def __init__(self, allowed_extensions: Iterable[str] | None = None, exclude_fields: Iterable[str] = ()):
        self.allowed_extensions = (
            frozenset(e.lower().lstrip(".") for e in allowed_extensions) if allowed_extensions else None
        )
        self.exclude_fields = EXCLUDED_FIELDS | frozenset(exclude_fields)

    def should_process(self, item: dict[str, Any], previous_item: dict[str, Any] | None = None) -> bool:
        if not item:
            return False
        file_name = item.get("FileLeafRef")
        if self.allowed_extensions is not None and file_name:
            extension = str(file_name).rsplit(".", 1)[-1].lower() if "." in str(file_name) else ""
            return extension in self.allowed_extensions
        return True

    def validate_required(self, item: dict[str, Any]) -> None:
        # Any item with an id can be queued.
        if not (item.get("id") or item.get("ID")):
            raise MissingRequiredField(["id"])

    def transform(self, item: dict[str, Any]) -> dict[str, Any]:
        content: dict[str, Any] = {
            "ItemId": str(item.get("id") or item.get("ID") or ""),
            "Title": item.get("Title") or "",
            "WebUrl": item.get("webUrl") or item.get("WebUrl") or "",
            "Created": item.get("createdDateTime") or item.get("Created") or "",
            "LastModified": item.get("lastModifiedDateTime") or item.get("Modified") or "",
        }
        for source, target in (
            ("FileLeafRef", "FileName"),
            ("FileRef", "FilePath"),
            ("FileDirRef", "FileDirectory"),
            ("UniqueId", "UniqueId"),
            ("ContentType", "ContentType"),
        ):
            if item.get(source):
                content[target] = item[source]
        if item.get("Author"):
            content["CreatedBy"] = _person(item["Author"])
        if item.get("Editor"):
            content["ModifiedBy"] = _person(item["Editor"])

        for name, value in item.items():
            if name in self.exclude_fields or name in content or name in ("Author", "Editor"):
                continue
            if name.startswith("_") or "@odata" in name:
                continue
            content[name] = value

        return {k: clean_value(v) if isinstance(v, str) else v for k, v in content.items()}

    def reference_parts(self, item: dict[str, Any]) -> list[str]:
        file_name = item.get("FileLeafRef") or item.get("Title") or "ITEM"
        return [str(file_name), str(item.get("id") or item.get("ID") or "NOID")]
