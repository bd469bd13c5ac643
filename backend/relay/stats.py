"""Dispatch counters exposed by the status endpoint."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class DestinationStats:
    """Per-destination outcome counters."""

    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    last_dispatch_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "last_dispatch_at": self.last_dispatch_at.isoformat() if self.last_dispatch_at else None,
        }


@dataclass
class DispatchStats:
    """Process-wide dispatch statistics."""

    batches: int = 0
    notifications: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    unknown_deltas: int = 0
    last_batch_at: datetime | None = None

    failures_by_code: dict[str, int] = field(default_factory=dict)
    skips_by_reason: dict[str, int] = field(default_factory=dict)
    by_destination: dict[str, DestinationStats] = field(default_factory=dict)

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_batch(self, size: int, now: datetime) -> None:
        with self._lock:
            self.batches += 1
            self.notifications += max(0, int(size))
            self.last_batch_at = now

    def record_result(self, *, status: str, destination: str, now: datetime, code: str | None = None) -> None:
        """Record one terminal dispatch outcome (`succeeded`, `failed` or `skipped`)."""
        with self._lock:
            dest = self.by_destination.setdefault(destination or "none", DestinationStats())
            dest.last_dispatch_at = now
            if status == "succeeded":
                self.succeeded += 1
                dest.succeeded += 1
            elif status == "failed":
                self.failed += 1
                dest.failed += 1
                if code:
                    self.failures_by_code[code] = self.failures_by_code.get(code, 0) + 1
            else:
                self.skipped += 1
                dest.skipped += 1
                if code:
                    self.skips_by_reason[code] = self.skips_by_reason.get(code, 0) + 1

    def record_unknown_delta(self) -> None:
        with self._lock:
            self.unknown_deltas += 1

    def as_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "batches": self.batches,
                "notifications": self.notifications,
                "succeeded": self.succeeded,
                "failed": self.failed,
                "skipped": self.skipped,
                "unknown_deltas": self.unknown_deltas,
                "last_batch_at": self.last_batch_at.isoformat() if self.last_batch_at else None,
                "failures_by_code": dict(self.failures_by_code),
                "skips_by_reason": dict(self.skips_by_reason),
                "by_destination": {k: v.as_dict() for k, v in self.by_destination.items()},
            }

    def reset(self) -> None:
        """Reset all counters (for testing)."""
        with self._lock:
            self.batches = 0
            self.notifications = 0
            self.succeeded = 0
            self.failed = 0
            self.skipped = 0
            self.unknown_deltas = 0
            self.last_batch_at = None
            self.failures_by_code.clear()
            self.skips_by_reason.clear()
            self.by_destination.clear()
