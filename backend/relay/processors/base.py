"""
Queue processor protocol.

A processor decides whether a SharePoint item should become a queue item and
what that item carries. Processors share no base class; anything with these
attributes and methods can be registered.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class QueueProcessor(Protocol):
    """
    Each processor provides:
        - name: Registry name
        - priority: Queue item priority (Low, Normal, High)
        - reference_prefix: Leading segment of queue item references
        - default_queue: Queue used when the directive names none ("" for the configured default)
        - should_process(): Pure predicate on the current (and previous) item
        - validate_required(): Raise MissingRequiredField / InvalidFieldValue
        - transform(): Canonical SpecificContent for the queue item
        - reference_parts(): Business identifiers embedded in the reference
    """

    name: str
    priority: str
    reference_prefix: str
    default_queue: str

    def should_process(self, item: dict[str, Any], previous_item: dict[str, Any] | None = None) -> bool:
        ...

    def validate_required(self, item: dict[str, Any]) -> None:
        ...

    def transform(self, item: dict[str, Any]) -> dict[str, Any]:
        ...

    def reference_parts(self, item: dict[str, Any]) -> list[str]:
        ...


def first_value(item: dict[str, Any] | None, aliases: tuple[str, ...]) -> Any:
    """Return the first non-blank value among `aliases` (SharePoint encodes display names inconsistently)."""
    if not item:
        return None
    for name in aliases:
        value = item.get(name)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None
