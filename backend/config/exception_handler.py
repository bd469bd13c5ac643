from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from rest_framework import exceptions as drf_exceptions
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)


def _error_response(
    *,
    error_status: str,
    message: str,
    http_status: int,
    details: dict[str, list[str]] | None = None,
    gateway: str | None = None,
    code: str | None = None,
) -> Response:
    body: dict[str, object] = {
        "error": {
            "status": error_status,
            "message": message,
        }
    }
    if details:
        body["error"]["details"] = details  # type: ignore[index]
    if gateway:
        body["error"]["gateway"] = gateway  # type: ignore[index]
    if code:
        body["error"]["code"] = code  # type: ignore[index]
    return Response(body, status=http_status)


def _extract_first_message(data: Any) -> str | None:
    if isinstance(data, str):
        return data or None
    if isinstance(data, Sequence) and not isinstance(data, (str, bytes, bytearray)):
        for item in data:
            if isinstance(item, str) and item:
                return item
        return None
    if not isinstance(data, Mapping):
        return None

    detail = data.get("detail")
    if isinstance(detail, str) and detail:
        return detail

    non_field = data.get("non_field_errors")
    if isinstance(non_field, Sequence) and non_field and isinstance(non_field[0], str):
        return non_field[0]

    for key, value in data.items():
        if key in {"detail", "non_field_errors"}:
            continue
        if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
            if value and isinstance(value[0], str):
                return f"{key}: {value[0]}"
        if isinstance(value, str) and value:
            return f"{key}: {value}"
    return None


def _flatten_error_details(details: Any) -> dict[str, list[str]]:
    out: dict[str, list[str]] = {}

    def add(path: str, value: Any) -> None:
        key = path or "non_field_errors"
        out.setdefault(key, []).append(str(value))

    def walk(path: str, value: Any) -> None:
        if isinstance(value, Mapping):
            for k, v in value.items():
                next_path = f"{path}.{k}" if path else str(k)
                walk(next_path, v)
            return

        if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
            # A list of scalar messages is a leaf list.
            if all(not isinstance(item, (Mapping, Sequence)) or isinstance(item, (str, bytes, bytearray)) for item in value):
                for item in value:
                    add(path, item)
                return

            for idx, item in enumerate(value):
                next_path = f"{path}.{idx}" if path else str(idx)
                walk(next_path, item)
            return

        add(path, value)

    walk("", details)
    return out


def _drf_error_status(exc: Exception, response: Response) -> str:
    if isinstance(exc, drf_exceptions.ValidationError):
        return "validation_error"
    if isinstance(exc, (drf_exceptions.ParseError, drf_exceptions.UnsupportedMediaType)):
        return "bad_request"
    if isinstance(exc, drf_exceptions.NotFound):
        return "not_found"
    if isinstance(exc, drf_exceptions.MethodNotAllowed):
        return "method_not_allowed"
    if response.status_code >= 500:
        return "server_error"
    return "bad_request"


def _wrap_drf_error(exc: Exception, response: Response) -> Response:
    error_status = _drf_error_status(exc, response)
    data = response.data

    details: dict[str, list[str]] | None = None
    message = _extract_first_message(data) or "Request failed."

    if isinstance(exc, drf_exceptions.ValidationError):
        details = _flatten_error_details(data)
        if len(details) == 1:
            (only_key, messages), = details.items()
            message = messages[0] if messages else "One or more fields failed validation."
        else:
            message = "One or more fields failed validation."

    return _error_response(
        error_status=error_status,
        message=message,
        http_status=response.status_code,
        details=details,
    )


def custom_exception_handler(exc: Exception, context):
    """
    Central exception->HTTP mapping for domain/use-case exceptions.

    Views stay thin: they raise meaningful exceptions and this layer turns them
    into the `{ "error": {...} }` envelope.
    """

    response = drf_exception_handler(exc, context)
    if response is not None:
        return _wrap_drf_error(exc, response)

    # Local import to avoid import-time side effects.
    from config import domain_exceptions as domain

    if isinstance(exc, domain.ValidationError):
        return _error_response(
            error_status="validation_error",
            message=str(exc),
            http_status=status.HTTP_400_BAD_REQUEST,
            gateway=getattr(exc, "gateway_name", None),
            code=exc.error_code,
        )
    if isinstance(exc, domain.NotFoundError):
        return _error_response(
            error_status="not_found",
            message=str(exc),
            http_status=status.HTTP_404_NOT_FOUND,
            code=exc.error_code,
        )
    if isinstance(exc, domain.ConfigurationError):
        logger.warning("Configuration error: %s", str(exc))
        return _error_response(
            error_status="configuration_error",
            message=str(exc),
            http_status=status.HTTP_503_SERVICE_UNAVAILABLE,
            code=exc.error_code,
        )

    logger.exception(
        "Unhandled exception in API view: %s",
        context.get("view").__class__.__name__ if context.get("view") else "unknown",
        exc_info=exc,
    )
    return None
