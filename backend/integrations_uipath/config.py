from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass

from config.domain_exceptions import ConfigurationError

from .auth import ClientCredentials

DEFAULT_TOKEN_URL = "https://cloud.uipath.com/identity_/connect/token"

DEFAULT_UIPATH_CONNECTION: dict[str, object] = {
    "orchestrator_url": "",
    "token_url": DEFAULT_TOKEN_URL,
    "tenant_name": "",
    "client_id": "",
    "client_secret": "",
    "scope": "",
    "organization_unit_id": "",
    "default_queue": "",
    "timeout_seconds": 30.0,
    "retry_attempts": 3,
    "retry_base_delay_seconds": 2.0,
    "token_refresh_margin_seconds": 300,
    "environments": {},
}

PRESET_FIELDS = ("tenant_name", "organization_unit_id", "orchestrator_url")


@dataclass(frozen=True)
class UiPathConnection:
    orchestrator_url: str
    token_url: str
    tenant_name: str
    client_id: str
    client_secret: str
    scope: str = ""
    organization_unit_id: str = ""
    default_queue: str = ""
    timeout_seconds: float = 30.0
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 2.0
    environment: str = ""

    @property
    def credentials(self) -> ClientCredentials:
        return ClientCredentials(
            key=f"uipath:{self.environment or 'default'}:{self.tenant_name}",
            token_url=self.token_url,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scope=self.scope,
            timeout_seconds=self.timeout_seconds,
        )

    def require_complete(self) -> None:
        """Raise ConfigurationError listing any setting a queue submission cannot do without."""
        missing = [
            name
            for name in ("orchestrator_url", "client_id", "client_secret")
            if not getattr(self, name)
        ]
        if missing:
            label = f" for environment {self.environment}" if self.environment else ""
            raise ConfigurationError(f"Missing UiPath configuration{label}: {', '.join(missing)}")


def _clamp_int(value: object, default: int, *, minimum: int, maximum: int) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        return default
    return max(minimum, min(maximum, value))


def _clamp_float(value: object, default: float, *, minimum: float, maximum: float) -> float:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return default
    return max(minimum, min(maximum, float(value)))


def normalize_uipath_settings(raw: object) -> dict[str, object]:
    """Normalize the raw `UIPATH` settings object into the expected shape."""
    base = deepcopy(DEFAULT_UIPATH_CONNECTION)
    if isinstance(raw, dict):
        base.update({k: v for k, v in raw.items() if k in base})

    for key in ("orchestrator_url", "token_url", "tenant_name", "client_id", "client_secret", "scope", "default_queue"):
        base[key] = str(base.get(key) or "").strip()
    base["orchestrator_url"] = str(base["orchestrator_url"]).rstrip("/")
    base["token_url"] = base["token_url"] or DEFAULT_TOKEN_URL
    base["organization_unit_id"] = str(base.get("organization_unit_id") or "").strip()

    base["timeout_seconds"] = _clamp_float(base.get("timeout_seconds"), 30.0, minimum=1.0, maximum=120.0)
    base["retry_attempts"] = _clamp_int(base.get("retry_attempts"), 3, minimum=1, maximum=10)
    base["retry_base_delay_seconds"] = _clamp_float(
        base.get("retry_base_delay_seconds"), 2.0, minimum=0.0, maximum=60.0
    )
    base["token_refresh_margin_seconds"] = _clamp_int(
        base.get("token_refresh_margin_seconds"), 300, minimum=0, maximum=3600
    )

    environments: dict[str, dict[str, str]] = {}
    raw_envs = base.get("environments")
    if isinstance(raw_envs, dict):
        for name, preset in raw_envs.items():
            if not isinstance(preset, dict):
                continue
            environments[str(name).strip().upper()] = {
                field: str(preset.get(field) or "").strip() for field in PRESET_FIELDS
            }
    base["environments"] = environments
    return base


def resolve_uipath_connection(
    *,
    environment: str | None = None,
    folder: str | None = None,
    raw: object = None,
) -> UiPathConnection:
    """
    Build the connection used for one submission.

    A named environment overlays its preset (tenant, folder, orchestrator URL)
    on the base settings; an explicit folder overrides the organization unit.
    """
    if raw is None:
        from django.conf import settings

        raw = getattr(settings, "UIPATH", None)
    normalized = normalize_uipath_settings(raw)

    env_name = (environment or "").strip().upper()
    if env_name:
        presets: dict[str, dict[str, str]] = normalized["environments"]  # type: ignore[assignment]
        preset = presets.get(env_name)
        if preset is None:
            raise ConfigurationError(f"Unknown UiPath environment: {environment}")
        for field in PRESET_FIELDS:
            if preset.get(field):
                normalized[field] = preset[field].rstrip("/") if field == "orchestrator_url" else preset[field]

    if folder is not None and str(folder).strip():
        normalized["organization_unit_id"] = str(folder).strip()

    return UiPathConnection(
        orchestrator_url=str(normalized["orchestrator_url"]),
        token_url=str(normalized["token_url"]),
        tenant_name=str(normalized["tenant_name"]),
        client_id=str(normalized["client_id"]),
        client_secret=str(normalized["client_secret"]),
        scope=str(normalized["scope"]),
        organization_unit_id=str(normalized["organization_unit_id"]),
        default_queue=str(normalized["default_queue"]),
        timeout_seconds=float(normalized["timeout_seconds"]),  # type: ignore[arg-type]
        retry_attempts=int(normalized["retry_attempts"]),  # type: ignore[arg-type]
        retry_base_delay_seconds=float(normalized["retry_base_delay_seconds"]),  # type: ignore[arg-type]
        environment=env_name,
    )
