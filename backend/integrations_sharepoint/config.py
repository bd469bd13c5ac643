from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass

from config.domain_exceptions import ConfigurationError
from integrations_uipath.auth import ClientCredentials

from .exceptions import GRAPH_GATEWAY

GRAPH_SCOPE = "https://graph.microsoft.com/.default"

DEFAULT_SHAREPOINT_CONNECTION: dict[str, object] = {
    "tenant_id": "",
    "client_id": "",
    "client_secret": "",
    "graph_base_url": "https://graph.microsoft.com/v1.0",
    "site_base_url": "",
    "timeout_seconds": 10.0,
}


@dataclass(frozen=True)
class SharePointConnection:
    tenant_id: str
    client_id: str
    client_secret: str
    graph_base_url: str = "https://graph.microsoft.com/v1.0"
    site_base_url: str = ""
    timeout_seconds: float = 10.0

    @property
    def credentials(self) -> ClientCredentials:
        return ClientCredentials(
            key=f"graph:{self.tenant_id}:{self.client_id}",
            token_url=f"https://login.microsoftonline.com/{self.tenant_id}/oauth2/v2.0/token",
            client_id=self.client_id,
            client_secret=self.client_secret,
            scope=GRAPH_SCOPE,
            timeout_seconds=self.timeout_seconds,
            gateway_name=GRAPH_GATEWAY,
        )

    def require_complete(self) -> None:
        missing = [name for name in ("tenant_id", "client_id", "client_secret") if not getattr(self, name)]
        if missing:
            raise ConfigurationError(f"Missing SharePoint configuration: {', '.join(missing)}")


def normalize_sharepoint_settings(raw: object) -> dict[str, object]:
    """Normalize the raw `SHAREPOINT` settings object into the expected shape."""
    base = deepcopy(DEFAULT_SHAREPOINT_CONNECTION)
    if isinstance(raw, dict):
        base.update({k: v for k, v in raw.items() if k in base})
    for key in ("tenant_id", "client_id", "client_secret", "graph_base_url", "site_base_url"):
        base[key] = str(base.get(key) or "").strip().rstrip("/")
    base["graph_base_url"] = base["graph_base_url"] or DEFAULT_SHAREPOINT_CONNECTION["graph_base_url"]

    timeout = base.get("timeout_seconds")
    if not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout <= 0:
        timeout = 10.0
    base["timeout_seconds"] = float(min(timeout, 60.0))
    return base


def get_sharepoint_connection(raw: object = None) -> SharePointConnection:
    if raw is None:
        from django.conf import settings

        raw = getattr(settings, "SHAREPOINT", None)
    normalized = normalize_sharepoint_settings(raw)
    return SharePointConnection(
        tenant_id=str(normalized["tenant_id"]),
        client_id=str(normalized["client_id"]),
        client_secret=str(normalized["client_secret"]),
        graph_base_url=str(normalized["graph_base_url"]),
        site_base_url=str(normalized["site_base_url"]),
        timeout_seconds=float(normalized["timeout_seconds"]),  # type: ignore[arg-type]
    )
