"""
HTTP forwarding of notifications to an arbitrary endpoint.

The envelope grows with the mode:

    simple       notification only
    withData     + currentState
    withChanges  + currentState, changes, previousState
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import httpx
from django.utils import timezone

from change_tracking.detector import ChangeRecord

from .config import RelayConfig, get_relay_config
from .directives import MODE_SIMPLE, MODE_WITH_CHANGES, MODE_WITH_DATA, RoutingDirective
from .exceptions import DestinationUnreachable, ForwardingRejected, MalformedDirective

logger = logging.getLogger(__name__)

WEBHOOK_HEADER = "X-SharePoint-Webhook"
MODE_HEADER = "X-Forwarding-Mode"


def filter_fields(
    fields: dict[str, Any] | None,
    *,
    include: Iterable[str] = (),
    exclude: Iterable[str] = (),
) -> dict[str, Any]:
    """Apply the include list first, then drop excluded names."""
    if not fields:
        return {}
    include = tuple(include)
    exclude = frozenset(exclude)
    if include:
        out = {name: fields[name] for name in include if name in fields}
    else:
        out = dict(fields)
    for name in exclude:
        out.pop(name, None)
    return out


@dataclass(frozen=True)
class ForwardResult:
    url: str
    mode: str
    status_code: int

    def as_dict(self) -> dict[str, Any]:
        return {"url": self.url, "mode": self.mode, "status_code": self.status_code}


def build_envelope(
    *,
    notification: dict[str, Any],
    directive: RoutingDirective,
    source: str,
    item: dict[str, Any] | None = None,
    change: ChangeRecord | None = None,
) -> dict[str, Any]:
    mode = directive.mode
    envelope: dict[str, Any] = {
        "timestamp": timezone.now().isoformat(),
        "source": source,
        "mode": mode,
        "notification": notification,
    }
    if mode == MODE_SIMPLE or item is None:
        return envelope

    include, exclude = directive.include_fields, directive.exclude_fields
    envelope["currentState"] = {
        "id": item.get("id"),
        "lastModified": item.get("lastModifiedDateTime") or item.get("Modified"),
        "webUrl": item.get("webUrl"),
        "fields": filter_fields(item, include=include, exclude=exclude),
    }

    if mode == MODE_WITH_CHANGES and change is not None:
        envelope["changes"] = change.as_changes_dict()
        if change.previous_fields is not None:
            envelope["previousState"] = {
                "version": change.previous_version,
                "fields": filter_fields(change.previous_fields, include=include, exclude=exclude),
            }
    return envelope


class Forwarder:
    def __init__(self, config: RelayConfig | None = None):
        self.config = config or get_relay_config()

    def forward(
        self,
        directive: RoutingDirective,
        *,
        notification: dict[str, Any],
        item: dict[str, Any] | None = None,
        change: ChangeRecord | None = None,
    ) -> ForwardResult:
        if directive.mode not in (MODE_SIMPLE, MODE_WITH_DATA, MODE_WITH_CHANGES):
            raise MalformedDirective(f"Unknown forwarding mode {directive.mode!r}")

        envelope = build_envelope(
            notification=notification,
            directive=directive,
            source=self.config.source_name,
            item=item,
            change=change,
        )
        headers = {
            "Content-Type": "application/json",
            WEBHOOK_HEADER: "true",
            MODE_HEADER: directive.mode,
        }

        url = directive.target
        try:
            with httpx.Client(timeout=self.config.forward_timeout_seconds) as client:
                response = client.post(url, json=envelope, headers=headers)
        except httpx.TimeoutException as exc:
            raise DestinationUnreachable(f"Forwarding to {url} timed out") from exc
        except httpx.RequestError as exc:
            raise DestinationUnreachable(f"Forwarding to {url} failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise ForwardingRejected(
                f"Forwarding endpoint returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        logger.info("Forwarded notification to %s (mode=%s, HTTP %d)", url, directive.mode, response.status_code)
        return ForwardResult(url=url, mode=directive.mode, status_code=response.status_code)
