"""
Costco inline routing: status-triggered order forms.

An item is queued when its Status moves to "Send Generated Form" and the
shipping fields are filled in. The queue item carries only what the robot
needs to generate the form.
"""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any

from integrations_uipath.sanitize import clean_value
from relay.exceptions import InvalidFieldValue, MissingRequiredField

from .base import first_value

logger = logging.getLogger(__name__)

TRIGGER_STATUS = "Send Generated Form"

# Canonical name -> internal names SharePoint may use for the column.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "ShipToEmail": ("ShipToEmail", "ShiptoEmail", "Ship_x002d_toEmail", "Ship_x0020_To_x0020_Email"),
    "ShipDate": ("ShipDate", "Ship_x0020_Date"),
    "Style": ("Style",),
    "PO": ("PO", "PO_No", "PO_x005f_No", "PO_x005f_no", "PONumber"),
    "Status": ("Status",),
}
REQUIRED_FIELDS = ("ShipToEmail", "ShipDate", "Style", "PO")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_US_DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})")
_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_PO_RE = re.compile(r"^[A-Z0-9\-_,\s]+$", re.IGNORECASE)


def _text(item: dict[str, Any] | None, canonical: str) -> str:
    value = first_value(item, FIELD_ALIASES[canonical])
    return "" if value is None else clean_value(str(value))


def _parse_ship_date(raw: str) -> date | None:
    match = _US_DATE_RE.match(raw)
    try:
        if match:
            month, day, year = (int(p) for p in match.groups())
            return date(year, month, day)
        match = _ISO_DATE_RE.match(raw)
        if match:
            year, month, day = (int(p) for p in match.groups())
            return date(year, month, day)
    except ValueError:
        return None
    return None


class CostcoRoutingProcessor:
    name = "costco-style"
    priority = "High"
    reference_prefix = "COSTCO"
    default_queue = "COSTCO-INLINE-Routing"

    def missing_fields(self, item: dict[str, Any]) -> list[str]:
        return [name for name in REQUIRED_FIELDS if not _text(item, name)]

    def should_process(self, item: dict[str, Any], previous_item: dict[str, Any] | None = None) -> bool:
        status = _text(item, "Status")
        if status != TRIGGER_STATUS:
            return False
        if self.missing_fields(item):
            return False
        if previous_item:
            previous_status = _text(previous_item, "Status")
            if previous_status == status:
                logger.debug("Status unchanged for item %s; not queueing", item.get("id"))
                return False
        return True

    def validate_required(self, item: dict[str, Any]) -> None:
        missing = self.missing_fields(item)
        if missing:
            raise MissingRequiredField(missing)

        email = _text(item, "ShipToEmail")
        if not _EMAIL_RE.match(email):
            raise InvalidFieldValue("ShipToEmail", "invalid email format")
        if _parse_ship_date(_text(item, "ShipDate")) is None:
            raise InvalidFieldValue("ShipDate", "expected M/D/YYYY or YYYY-MM-DD")
        if not _PO_RE.match(_text(item, "PO")):
            raise InvalidFieldValue("PO", "only letters, digits, '-', '_', ',' and spaces are allowed")

    def transform(self, item: dict[str, Any]) -> dict[str, Any]:
        ship_date = _parse_ship_date(_text(item, "ShipDate"))
        return {
            "SharePointItemId": str(item.get("id") or item.get("ID") or ""),
            "PONumber": _text(item, "PO"),
            "Style": _text(item, "Style"),
            "ShipDate": ship_date.isoformat() if ship_date else _text(item, "ShipDate"),
            "Status": _text(item, "Status"),
        }

    def reference_parts(self, item: dict[str, Any]) -> list[str]:
        return [_text(item, "PO"), str(item.get("id") or item.get("ID") or "")]
