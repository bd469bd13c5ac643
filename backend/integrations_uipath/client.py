"""
UiPath Orchestrator queue client.

Submits queue items via `AddQueueItem`, retrying rate limits, server errors
and timeouts with exponential backoff. A 401 invalidates the cached token and
is retried once with a fresh one.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

import httpx

from .auth import TokenCache, get_token_cache
from .config import UiPathConnection
from .exceptions import AuthenticationFailure, DestinationTransientError, DestinationValidationError
from .sanitize import sanitize_content

logger = logging.getLogger(__name__)

ADD_QUEUE_ITEM_PATH = "/odata/Queues/UiPathODataSvc.AddQueueItem"
PRIORITIES = ("Low", "Normal", "High")
MAX_BACKOFF_SECONDS = 60.0

_REFERENCE_PART_RE = re.compile(r"[\s,]+")

_stamp_lock = threading.Lock()
_last_stamp_ms = 0


def next_reference_stamp() -> int:
    """Millisecond timestamp that strictly increases across calls in this process."""
    global _last_stamp_ms
    with _stamp_lock:
        stamp = int(time.time() * 1000)
        if stamp <= _last_stamp_ms:
            stamp = _last_stamp_ms + 1
        _last_stamp_ms = stamp
        return stamp


def build_reference(prefix: str, parts: Iterable[object]) -> str:
    """
    Compose `PREFIX_part1_part2_<stamp>`.

    Parts are stripped of whitespace and commas so the reference can be
    correlated back to its source item.
    """
    cleaned = [prefix.strip().upper()] if prefix and prefix.strip() else []
    for part in parts:
        if part is None:
            continue
        text = _REFERENCE_PART_RE.sub("", str(part))
        if text:
            cleaned.append(text)
    cleaned.append(str(next_reference_stamp()))
    return "_".join(cleaned)


@dataclass(frozen=True)
class QueuePayload:
    target_name: str
    priority: str
    reference: str
    content: dict[str, Any] = field(default_factory=dict)

    def as_request_body(self) -> dict[str, Any]:
        return {
            "itemData": {
                "Name": self.target_name,
                "Priority": self.priority,
                "Reference": self.reference,
                "SpecificContent": self.content,
            }
        }


@dataclass
class QueueSubmission:
    """Outcome of a successful submission."""

    queue_name: str
    reference: str
    attempts: int
    status_code: int
    queue_item_id: int | str | None = None
    response: dict | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "queue": self.queue_name,
            "reference": self.reference,
            "attempts": self.attempts,
            "status_code": self.status_code,
            "queue_item_id": self.queue_item_id,
        }


def compute_backoff_seconds(*, attempt: int, base_seconds: float) -> float:
    """
    Delay before the next attempt; `attempt` is 1-based (first failure => attempt=1).
    """
    attempt = max(1, attempt)
    return min(base_seconds * (2 ** (attempt - 1)), MAX_BACKOFF_SECONDS)


class UiPathQueueClient:
    def __init__(
        self,
        connection: UiPathConnection,
        *,
        token_cache: TokenCache | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.connection = connection
        self.token_cache = token_cache or get_token_cache()
        self._sleep = sleep

    @property
    def endpoint(self) -> str:
        return f"{self.connection.orchestrator_url}{ADD_QUEUE_ITEM_PATH}"

    def build_payload(
        self,
        *,
        queue_name: str,
        content: dict[str, Any],
        reference: str,
        priority: str = "Normal",
        site_base_url: str = "",
    ) -> QueuePayload:
        if priority not in PRIORITIES:
            priority = "Normal"
        return QueuePayload(
            target_name=queue_name,
            priority=priority,
            reference=reference,
            content=sanitize_content(content, site_base_url=site_base_url),
        )

    def _headers(self, token: str) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.connection.organization_unit_id:
            headers["X-UIPATH-OrganizationUnitId"] = self.connection.organization_unit_id
        if self.connection.tenant_name:
            headers["X-UIPATH-TenantName"] = self.connection.tenant_name
        return headers

    def submit(self, payload: QueuePayload) -> QueueSubmission:
        """
        Add one queue item.

        Raises:
            DestinationValidationError: 4xx other than 401/429 (not retried)
            AuthenticationFailure: credentials rejected, or 401 twice in a row
            DestinationTransientError: 429/5xx/timeout on every attempt
        """
        self.connection.require_complete()
        body = payload.as_request_body()
        encoded = json.dumps(body, default=str).encode("utf-8")
        field_names = sorted(payload.content.keys())
        credentials = self.connection.credentials
        max_attempts = self.connection.retry_attempts

        attempt = 0
        reauthenticated = False
        with httpx.Client(timeout=self.connection.timeout_seconds) as client:
            while True:
                attempt += 1
                token = self.token_cache.get_token(credentials)
                logger.info(
                    "Submitting queue item to %s (ref=%s, attempt %d/%d, %d bytes, fields=%s)",
                    payload.target_name,
                    payload.reference,
                    attempt,
                    max_attempts,
                    len(encoded),
                    ",".join(field_names),
                )

                try:
                    response = client.post(self.endpoint, content=encoded, headers=self._headers(token))
                except httpx.TimeoutException:
                    error = DestinationTransientError(f"Queue submission to {payload.target_name} timed out")
                except httpx.RequestError as exc:
                    error = DestinationTransientError(f"Network error submitting to {payload.target_name}: {exc}")
                else:
                    status = response.status_code
                    if 200 <= status < 300:
                        data = _json_body(response)
                        logger.info(
                            "Queue item accepted by %s (ref=%s, HTTP %d)",
                            payload.target_name,
                            payload.reference,
                            status,
                        )
                        return QueueSubmission(
                            queue_name=payload.target_name,
                            reference=payload.reference,
                            attempts=attempt,
                            status_code=status,
                            queue_item_id=data.get("Id") if data else None,
                            response=data,
                        )

                    if status == 401:
                        self.token_cache.invalidate(credentials)
                        if reauthenticated:
                            raise AuthenticationFailure(
                                f"Orchestrator rejected a fresh token for {payload.target_name}",
                                status_code=status,
                            )
                        reauthenticated = True
                        logger.warning("Orchestrator returned 401; retrying with a fresh token")
                        # The re-authentication retry does not consume a backoff attempt.
                        attempt -= 1
                        continue

                    if status == 429 or status >= 500:
                        error = DestinationTransientError(
                            f"Orchestrator returned HTTP {status} for {payload.target_name}",
                            status_code=status,
                        )
                    else:
                        detail = _error_detail(response)
                        logger.error(
                            "Orchestrator rejected queue item for %s (ref=%s): HTTP %d %s",
                            payload.target_name,
                            payload.reference,
                            status,
                            detail,
                        )
                        raise DestinationValidationError(
                            f"Orchestrator rejected queue item (HTTP {status}): {detail}",
                            status_code=status,
                        )

                if attempt >= max_attempts:
                    logger.error(
                        "Giving up on queue item for %s after %d attempts: %s",
                        payload.target_name,
                        attempt,
                        error,
                    )
                    raise error

                delay = compute_backoff_seconds(
                    attempt=attempt, base_seconds=self.connection.retry_base_delay_seconds
                )
                logger.warning(
                    "Queue submission attempt %d/%d failed (%s); retrying in %.1fs",
                    attempt,
                    max_attempts,
                    error,
                    delay,
                )
                self._sleep(delay)


def _json_body(response: httpx.Response) -> dict | None:
    if not response.content:
        return None
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _error_detail(response: httpx.Response) -> str:
    data = _json_body(response)
    if data:
        message = data.get("message") or data.get("errorMessage") or data.get("error")
        if message:
            return str(message)[:300]
    return (response.text or "")[:300]
