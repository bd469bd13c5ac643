from __future__ import annotations

from config.domain_exceptions import ServiceUnavailableError


class SnapshotStoreUnavailable(ServiceUnavailableError):
    """The snapshot table could not be read or written."""

    error_code = "SNAPSHOT_STORE_UNAVAILABLE"
