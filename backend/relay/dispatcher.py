"""
Notification dispatch.

Each entry of a webhook batch is handled on its own:

    received -> directive_parsed -> (change_detected) -> handler_resolved
             -> dispatched -> succeeded | failed | skipped

A failing entry produces a `failed` result carrying the error code; it never
prevents the rest of the batch from being dispatched, and the batch itself is
always acknowledged to SharePoint.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from django.utils import timezone

from change_tracking.detector import ChangeDetector, ChangeRecord
from change_tracking.exceptions import SnapshotStoreUnavailable
from config.domain_exceptions import ConfigurationError, DomainError
from integrations_sharepoint.graph import ListResource, SharePointGraphClient, parse_resource
from integrations_uipath.client import UiPathQueueClient, build_reference
from integrations_uipath.config import UiPathConnection, resolve_uipath_connection

from .config import RelayConfig, get_relay_config
from .directives import (
    DESTINATION_FORWARD,
    DESTINATION_NONE,
    DESTINATION_QUEUE,
    MODE_SIMPLE,
    RoutingDirective,
    parse_directive,
    validate_directive,
)
from .exceptions import InvalidNotification
from .forwarder import Forwarder
from .processors import get_handler
from .processors.base import QueueProcessor
from .stats import DispatchStats

logger = logging.getLogger(__name__)

# Result statuses
SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"

# Stages
STAGE_RECEIVED = "received"
STAGE_DIRECTIVE_PARSED = "directive_parsed"
STAGE_CHANGE_DETECTED = "change_detected"
STAGE_HANDLER_RESOLVED = "handler_resolved"
STAGE_DISPATCHED = "dispatched"

# Skip reasons
SKIP_NO_DESTINATION = "no_destination"
SKIP_UNSUPPORTED_CHANGE_TYPE = "unsupported_change_type"
SKIP_HANDLER_DECLINED = "handler_declined"
SKIP_UNCHANGED = "unchanged"

UNKNOWN_ERROR = "UNKNOWN_ERROR"

CHANGE_CREATED = "created"
CHANGE_UPDATED = "updated"
CHANGE_DELETED = "deleted"


@dataclass(frozen=True)
class Notification:
    """One entry of a SharePoint webhook batch."""

    subscription_id: str
    resource: str
    change_type: str = CHANGE_UPDATED
    client_state: str = ""
    tenant_id: str = ""
    site_url: str = ""
    resource_data: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_payload(cls, entry: Any) -> "Notification":
        if not isinstance(entry, dict):
            raise InvalidNotification("Notification entry must be an object")
        resource = entry.get("resource")
        if not isinstance(resource, str) or not resource.strip():
            raise InvalidNotification("Notification entry has no resource")
        resource_data = entry.get("resourceData")
        return cls(
            subscription_id=str(entry.get("subscriptionId") or ""),
            resource=resource.strip(),
            change_type=str(entry.get("changeType") or CHANGE_UPDATED).strip().lower(),
            client_state=str(entry.get("clientState") or ""),
            tenant_id=str(entry.get("tenantId") or ""),
            site_url=str(entry.get("siteUrl") or ""),
            resource_data=resource_data if isinstance(resource_data, dict) else {},
            raw=entry,
        )


@dataclass
class DispatchResult:
    status: str
    stage: str
    subscription_id: str = ""
    item_id: str | None = None
    destination: str = DESTINATION_NONE
    handler: str | None = None
    code: str | None = None
    message: str = ""
    changed_fields: list[str] | None = None
    unknown_delta: bool = False
    detail: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, *, detail: dict[str, Any] | None = None, **kwargs: Any) -> "DispatchResult":
        return cls(status=SUCCEEDED, stage=STAGE_DISPATCHED, detail=detail or {}, **kwargs)

    @classmethod
    def failed(cls, *, code: str, message: str, **kwargs: Any) -> "DispatchResult":
        return cls(status=FAILED, code=code, message=message, **kwargs)

    @classmethod
    def skipped(cls, *, reason: str, **kwargs: Any) -> "DispatchResult":
        return cls(status=SKIPPED, code=reason, **kwargs)

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.status,
            "stage": self.stage,
            "subscription_id": self.subscription_id or None,
            "item_id": self.item_id,
            "destination": self.destination,
            "handler": self.handler,
        }
        if self.status == FAILED:
            data["error"] = {"code": self.code, "message": self.message}
        elif self.status == SKIPPED:
            data["reason"] = self.code
        if self.changed_fields is not None:
            data["changed_fields"] = self.changed_fields
        if self.unknown_delta:
            data["unknown_delta"] = True
        if self.detail:
            data["detail"] = self.detail
        return data


@dataclass
class BatchResult:
    results: list[DispatchResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def processed(self) -> int:
        """Entries that reached a terminal state other than `failed`."""
        return sum(1 for r in self.results if r.status != FAILED)

    def as_dict(self) -> dict[str, Any]:
        return {
            "message": f"Received {self.total} notification(s)",
            "total": self.total,
            "processed": self.processed,
            "results": [r.as_dict() for r in self.results],
        }


@dataclass
class _Context:
    """Mutable per-notification state threaded through the stages."""

    notification: Notification
    stage: str = STAGE_RECEIVED
    directive: RoutingDirective | None = None
    resource: ListResource | None = None
    handler: QueueProcessor | None = None
    change: ChangeRecord | None = None

    @property
    def item_id(self) -> str | None:
        return self.resource.item_id if self.resource else None

    def result_fields(self) -> dict[str, Any]:
        directive = self.directive
        return {
            "stage": self.stage,
            "subscription_id": self.notification.subscription_id,
            "item_id": self.item_id,
            "destination": directive.destination if directive else DESTINATION_NONE,
            "handler": (directive.handler or None) if directive else None,
            "changed_fields": self.change.changed_field_names if self.change else None,
            "unknown_delta": bool(self.change and self.change.unknown),
        }


QueueClientFactory = Callable[[UiPathConnection], UiPathQueueClient]


class NotificationDispatcher:
    """
    Routes SharePoint change notifications to a queue or a forwarding URL.

    Collaborators are injectable for tests; by default they are built from
    Django settings.
    """

    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        graph_client: SharePointGraphClient | None = None,
        detector: ChangeDetector | None = None,
        forwarder: Forwarder | None = None,
        queue_client_factory: QueueClientFactory | None = None,
    ):
        self._config = config or get_relay_config()
        self._graph_client = graph_client
        self._detector = detector
        self._forwarder = forwarder
        self._queue_client_factory: QueueClientFactory = queue_client_factory or UiPathQueueClient
        self._stats = DispatchStats()

    @property
    def config(self) -> RelayConfig:
        return self._config

    @property
    def stats(self) -> DispatchStats:
        return self._stats

    @property
    def graph_client(self) -> SharePointGraphClient:
        if self._graph_client is None:
            self._graph_client = SharePointGraphClient()
        return self._graph_client

    @property
    def detector(self) -> ChangeDetector:
        if self._detector is None:
            self._detector = ChangeDetector(
                ignored_fields=self._config.ignored_fields,
                write_attempts=self._config.snapshot_write_attempts,
            )
        return self._detector

    @property
    def forwarder(self) -> Forwarder:
        if self._forwarder is None:
            self._forwarder = Forwarder(self._config)
        return self._forwarder

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def dispatch_batch(self, entries: Iterable[Any]) -> BatchResult:
        entries = list(entries)
        self._stats.record_batch(len(entries), timezone.now())
        batch = BatchResult()
        for entry in entries:
            try:
                notification = Notification.from_payload(entry)
            except InvalidNotification as exc:
                logger.warning("Ignoring invalid notification entry: %s", exc)
                result = DispatchResult.failed(code=exc.error_code, message=str(exc), stage=STAGE_RECEIVED)
                self._record(result)
                batch.results.append(result)
                continue
            batch.results.append(self.dispatch(notification))
        logger.info(
            "Dispatched batch of %d notification(s): %d processed",
            batch.total,
            batch.processed,
        )
        return batch

    def dispatch(self, notification: Notification) -> DispatchResult:
        """Dispatch one notification. Never raises."""
        ctx = _Context(notification=notification)
        try:
            result = self._dispatch(ctx)
        except DomainError as exc:
            logger.warning(
                "Notification failed at %s (subscription=%s, item=%s): %s %s",
                ctx.stage,
                notification.subscription_id,
                ctx.item_id,
                exc.error_code,
                exc,
            )
            result = DispatchResult.failed(code=exc.error_code, message=str(exc), **ctx.result_fields())
        except Exception as exc:
            logger.exception(
                "Unexpected error dispatching notification (subscription=%s, item=%s)",
                notification.subscription_id,
                ctx.item_id,
            )
            result = DispatchResult.failed(code=UNKNOWN_ERROR, message=str(exc), **ctx.result_fields())
        self._record(result)
        return result

    def get_status(self) -> dict[str, Any]:
        from .processors import get_available_handler_names

        return {
            "handlers": get_available_handler_names(),
            "suppress_unchanged_updates": self._config.suppress_unchanged_updates,
            "stats": self._stats.as_dict(),
        }

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _dispatch(self, ctx: _Context) -> DispatchResult:
        notification = ctx.notification
        directive = validate_directive(parse_directive(notification.client_state))
        ctx.directive = directive
        ctx.stage = STAGE_DIRECTIVE_PARSED
        resource = ctx.resource = parse_resource(notification.resource, notification.resource_data)
        logger.debug(
            "Notification %s for %s: destination=%s handler=%s",
            notification.change_type,
            resource.list_key,
            directive.destination,
            directive.handler or "-",
        )

        if directive.destination == DESTINATION_NONE and not directive.detect_changes:
            return DispatchResult.skipped(reason=SKIP_NO_DESTINATION, **ctx.result_fields())

        if notification.change_type == CHANGE_DELETED:
            return self._dispatch_deleted(ctx, directive, resource)

        # Resolve before fetching so a misnamed handler fails without a Graph call.
        handler: QueueProcessor | None = None
        if directive.destination == DESTINATION_QUEUE:
            handler = ctx.handler = get_handler(directive.handler)

        item: dict[str, Any] | None = None
        list_fields: dict[str, Any] | None = None
        if self._needs_item(directive):
            sp_item = self.graph_client.fetch_item(resource)
            resource = ctx.resource = ListResource(resource.site_id, resource.list_id, sp_item.item_id)
            item = sp_item.as_item()
            list_fields = sp_item.fields

        # Snapshots cover list columns only; item-level timestamps change on every edit.
        if list_fields is not None and directive.wants_changes:
            ctx.change = self._detect(resource, list_fields)
            ctx.stage = STAGE_CHANGE_DETECTED
            if self._is_suppressed(notification, ctx.change):
                logger.info(
                    "Suppressing unchanged update (subscription=%s, item=%s)",
                    notification.subscription_id,
                    ctx.item_id,
                )
                return DispatchResult.skipped(reason=SKIP_UNCHANGED, **ctx.result_fields())

        if directive.destination == DESTINATION_NONE:
            return DispatchResult.skipped(reason=SKIP_NO_DESTINATION, **ctx.result_fields())

        ctx.stage = STAGE_HANDLER_RESOLVED
        if handler is not None:
            return self._dispatch_queue(ctx, directive, handler, item or {})
        return self._dispatch_forward(ctx, directive, item)

    def _dispatch_deleted(self, ctx: _Context, directive: RoutingDirective, resource: ListResource) -> DispatchResult:
        if directive.detect_changes and ctx.item_id:
            try:
                self.detector.reset(resource.list_key, ctx.item_id)
            except SnapshotStoreUnavailable:
                logger.warning("Could not drop snapshot for deleted item %s", ctx.item_id)

        if directive.destination == DESTINATION_FORWARD:
            # The item is gone; only the notification itself can be forwarded.
            ctx.stage = STAGE_HANDLER_RESOLVED
            simple = RoutingDirective(
                destination=DESTINATION_FORWARD,
                target=directive.target,
                mode=MODE_SIMPLE,
            )
            return self._dispatch_forward(ctx, simple, None)
        if directive.destination == DESTINATION_QUEUE:
            return DispatchResult.skipped(reason=SKIP_UNSUPPORTED_CHANGE_TYPE, **ctx.result_fields())
        return DispatchResult.skipped(reason=SKIP_NO_DESTINATION, **ctx.result_fields())

    def _dispatch_queue(
        self,
        ctx: _Context,
        directive: RoutingDirective,
        handler: QueueProcessor,
        item: dict[str, Any],
    ) -> DispatchResult:
        previous_item = ctx.change.previous_fields if ctx.change else None
        if not handler.should_process(item, previous_item):
            logger.info(
                "Handler %s declined item %s (subscription=%s)",
                handler.name,
                ctx.item_id,
                ctx.notification.subscription_id,
            )
            return DispatchResult.skipped(reason=SKIP_HANDLER_DECLINED, **ctx.result_fields())

        handler.validate_required(item)
        content = handler.transform(item)
        if directive.detect_changes and ctx.change is not None and ctx.change.changed_fields:
            content["ChangedFields"] = ",".join(ctx.change.changed_field_names)

        connection, queue_name = resolve_queue_target(directive, handler)
        client = self._queue_client_factory(connection)
        payload = client.build_payload(
            queue_name=queue_name,
            content=content,
            reference=build_reference(handler.reference_prefix, handler.reference_parts(item)),
            priority=handler.priority,
            site_base_url=self.graph_client.connection.site_base_url,
        )
        ctx.stage = STAGE_DISPATCHED
        submission = client.submit(payload)
        logger.info(
            "Queued item %s to %s as %s (subscription=%s)",
            ctx.item_id,
            queue_name,
            submission.reference,
            ctx.notification.subscription_id,
        )
        return DispatchResult.ok(detail=submission.as_dict(), **_without_stage(ctx.result_fields()))

    def _dispatch_forward(
        self,
        ctx: _Context,
        directive: RoutingDirective,
        item: dict[str, Any] | None,
    ) -> DispatchResult:
        ctx.stage = STAGE_DISPATCHED
        forwarded = self.forwarder.forward(
            directive,
            notification=ctx.notification.raw,
            item=item,
            change=ctx.change,
        )
        return DispatchResult.ok(detail=forwarded.as_dict(), **_without_stage(ctx.result_fields()))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _needs_item(directive: RoutingDirective) -> bool:
        if directive.destination == DESTINATION_QUEUE or directive.detect_changes:
            return True
        return directive.destination == DESTINATION_FORWARD and directive.mode != MODE_SIMPLE

    def _detect(self, resource: ListResource, fields: dict[str, Any]) -> ChangeRecord:
        item_id = str(resource.item_id or "")
        try:
            return self.detector.compute_delta(resource.list_key, item_id, fields)
        except SnapshotStoreUnavailable as exc:
            self._stats.record_unknown_delta()
            logger.warning("Snapshot store unavailable for item %s; dispatching with unknown delta: %s", item_id, exc)
            return ChangeRecord.unknown_delta(item_id)

    def _is_suppressed(self, notification: Notification, change: ChangeRecord) -> bool:
        if not self._config.suppress_unchanged_updates:
            return False
        if notification.change_type != CHANGE_UPDATED:
            return False
        return not change.is_new_item and not change.has_changes

    def _record(self, result: DispatchResult) -> None:
        self._stats.record_result(
            status=result.status,
            destination=result.destination,
            now=timezone.now(),
            code=result.code,
        )


def resolve_queue_target(directive: RoutingDirective, handler: QueueProcessor) -> tuple[UiPathConnection, str]:
    """
    Resolve the Orchestrator connection and queue a directive submits to.

    The queue is the directive target, then the processor default, then the
    configured default. Raises ConfigurationError when none is set or the
    directive names an unknown environment.
    """
    environment = directive.environment
    connection = resolve_uipath_connection(
        environment=environment.name if environment else None,
        folder=environment.folder if environment else None,
    )
    queue_name = directive.target or handler.default_queue or connection.default_queue
    if not queue_name:
        raise ConfigurationError(f"No queue configured for handler {handler.name!r}")
    return connection, queue_name


def _without_stage(fields: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in fields.items() if k != "stage"}


_dispatcher: NotificationDispatcher | None = None
_dispatcher_lock = threading.Lock()


def get_dispatcher() -> NotificationDispatcher:
    """Get or create the singleton dispatcher instance."""
    global _dispatcher
    with _dispatcher_lock:
        if _dispatcher is None:
            _dispatcher = NotificationDispatcher()
        return _dispatcher


def reset_dispatcher() -> None:
    """Drop the singleton so the next call rebuilds it from settings (for tests)."""
    global _dispatcher
    with _dispatcher_lock:
        _dispatcher = None


def get_dispatcher_status() -> dict[str, Any]:
    return get_dispatcher().get_status()
