"""
Django settings for the SharePoint change relay.

Everything deployment-specific comes from environment variables so the same
image can serve dev and prod tenants.
"""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "insecure-dev-key-change-me")
DEBUG = _env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = [h.strip() for h in os.environ.get("DJANGO_ALLOWED_HOSTS", "*").split(",") if h.strip()]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "change_tracking",
    "integrations_sharepoint",
    "integrations_uipath",
    "relay",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "config.urls"
WSGI_APPLICATION = "config.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": os.environ.get("DB_ENGINE", "django.db.backends.sqlite3"),
        "NAME": os.environ.get("DB_NAME", str(BASE_DIR / "relay.sqlite3")),
        "USER": os.environ.get("DB_USER", ""),
        "PASSWORD": os.environ.get("DB_PASSWORD", ""),
        "HOST": os.environ.get("DB_HOST", ""),
        "PORT": os.environ.get("DB_PORT", ""),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"

REST_FRAMEWORK = {
    "DEFAULT_RENDERER_CLASSES": ["config.renderers.EnvelopeJSONRenderer"],
    "DEFAULT_PARSER_CLASSES": ["rest_framework.parsers.JSONParser"],
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.AllowAny"],
    "UNAUTHENTICATED_USER": None,
    "EXCEPTION_HANDLER": "config.exception_handler.custom_exception_handler",
}

# Dispatch behaviour. Normalized by `relay.config.normalize_relay_config`.
RELAY = {
    "suppress_unchanged_updates": _env_bool("RELAY_SUPPRESS_UNCHANGED_UPDATES", True),
    "forward_timeout_seconds": _env_float("RELAY_FORWARD_TIMEOUT_SECONDS", 10.0),
    "snapshot_write_attempts": _env_int("RELAY_SNAPSHOT_WRITE_ATTEMPTS", 3),
    "snapshot_retention_days": _env_int("RELAY_SNAPSHOT_RETENTION_DAYS", 30),
    "ignored_fields": [
        f.strip() for f in os.environ.get("RELAY_IGNORED_FIELDS", "").split(",") if f.strip()
    ],
    "source_name": os.environ.get("RELAY_SOURCE_NAME", "SharePoint-Webhook-Relay"),
}

# UiPath Orchestrator. Normalized by `integrations_uipath.config`.
UIPATH = {
    "orchestrator_url": os.environ.get("UIPATH_ORCHESTRATOR_URL", ""),
    "token_url": os.environ.get("UIPATH_TOKEN_URL", "https://cloud.uipath.com/identity_/connect/token"),
    "tenant_name": os.environ.get("UIPATH_TENANT_NAME", ""),
    "client_id": os.environ.get("UIPATH_CLIENT_ID", ""),
    "client_secret": os.environ.get("UIPATH_CLIENT_SECRET", ""),
    "scope": os.environ.get("UIPATH_SCOPE", ""),
    "organization_unit_id": os.environ.get("UIPATH_ORGANIZATION_UNIT_ID", ""),
    "default_queue": os.environ.get("UIPATH_DEFAULT_QUEUE", ""),
    "timeout_seconds": _env_float("UIPATH_TIMEOUT_SECONDS", 30.0),
    "retry_attempts": _env_int("UIPATH_RETRY_ATTEMPTS", 3),
    "retry_base_delay_seconds": _env_float("UIPATH_RETRY_DELAY_SECONDS", 2.0),
    "token_refresh_margin_seconds": _env_int("UIPATH_TOKEN_REFRESH_MARGIN_SECONDS", 300),
    # Named tenant/folder presets selectable from a routing directive.
    "environments": {
        "DEV": {
            "tenant_name": os.environ.get("UIPATH_DEV_TENANT_NAME", ""),
            "organization_unit_id": os.environ.get("UIPATH_DEV_FOLDER_ID", ""),
            "orchestrator_url": os.environ.get("UIPATH_DEV_ORCHESTRATOR_URL", ""),
        },
        "PROD": {
            "tenant_name": os.environ.get("UIPATH_PROD_TENANT_NAME", ""),
            "organization_unit_id": os.environ.get("UIPATH_PROD_FOLDER_ID", ""),
            "orchestrator_url": os.environ.get("UIPATH_PROD_ORCHESTRATOR_URL", ""),
        },
    },
}

# Microsoft Graph access to SharePoint. Normalized by `integrations_sharepoint.config`.
SHAREPOINT = {
    "tenant_id": os.environ.get("AZURE_TENANT_ID", ""),
    "client_id": os.environ.get("AZURE_CLIENT_ID", ""),
    "client_secret": os.environ.get("AZURE_CLIENT_SECRET", ""),
    "graph_base_url": os.environ.get("GRAPH_BASE_URL", "https://graph.microsoft.com/v1.0"),
    "site_base_url": os.environ.get("SHAREPOINT_BASE_URL", ""),
    "timeout_seconds": _env_float("GRAPH_TIMEOUT_SECONDS", 10.0),
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "default"},
    },
    "root": {
        "handlers": ["console"],
        "level": os.environ.get("RELAY_LOG_LEVEL", "INFO"),
    },
    "loggers": {
        "httpx": {"level": "WARNING"},
    },
}
