"""Relay configuration dataclass and settings normalization."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class RelayConfig:
    """Dispatch behaviour loaded from `settings.RELAY`."""

    suppress_unchanged_updates: bool = True
    forward_timeout_seconds: float = 10.0  # 1-60s range
    snapshot_write_attempts: int = 3
    snapshot_retention_days: int = 30
    ignored_fields: tuple[str, ...] = ()
    source_name: str = "SharePoint-Webhook-Relay"


def normalize_relay_config(raw: Any) -> RelayConfig:
    """
    Normalize raw settings dict into a typed RelayConfig.

    Args:
        raw: Raw settings value (dict or None)

    Returns:
        Validated RelayConfig with defaults applied
    """
    if not isinstance(raw, dict):
        return RelayConfig()

    suppress = raw.get("suppress_unchanged_updates", True)
    if not isinstance(suppress, bool):
        suppress = True

    timeout = raw.get("forward_timeout_seconds", 10.0)
    if not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout < 1:
        timeout = 1.0
    elif timeout > 60:
        timeout = 60.0

    attempts = raw.get("snapshot_write_attempts", 3)
    if not isinstance(attempts, int) or attempts < 1:
        attempts = 1
    elif attempts > 10:
        attempts = 10

    retention = raw.get("snapshot_retention_days", 30)
    if not isinstance(retention, int) or retention < 1:
        retention = 1

    ignored = raw.get("ignored_fields") or ()
    if isinstance(ignored, str):
        ignored = [ignored]
    ignored_fields = tuple(str(f).strip() for f in ignored if str(f).strip())

    source_name = raw.get("source_name")
    if not isinstance(source_name, str) or not source_name.strip():
        source_name = RelayConfig.source_name

    return RelayConfig(
        suppress_unchanged_updates=suppress,
        forward_timeout_seconds=float(timeout),
        snapshot_write_attempts=attempts,
        snapshot_retention_days=retention,
        ignored_fields=ignored_fields,
        source_name=source_name.strip(),
    )


def get_relay_config() -> RelayConfig:
    """Load relay configuration from Django settings."""
    from django.conf import settings

    return normalize_relay_config(getattr(settings, "RELAY", None))
