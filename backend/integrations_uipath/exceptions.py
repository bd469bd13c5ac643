from __future__ import annotations

from config.domain_exceptions import GatewayError

UIPATH_GATEWAY = "UiPath Orchestrator"


class UiPathGatewayError(GatewayError):
    """Base error for calls to an OAuth token endpoint or the Orchestrator API."""

    gateway_name = UIPATH_GATEWAY

    def __init__(self, message: str, *, status_code: int | None = None, gateway_name: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        if gateway_name:
            self.gateway_name = gateway_name


class AuthenticationFailure(UiPathGatewayError):
    """Credentials were rejected (token endpoint 4xx, or a repeated 401)."""

    error_code = "AUTHENTICATION_FAILED"


class DestinationValidationError(UiPathGatewayError):
    """The destination rejected the payload; resubmitting it would fail again."""

    error_code = "DESTINATION_REJECTED"


class DestinationTransientError(UiPathGatewayError):
    """429/5xx/timeout that persisted through every retry attempt."""

    error_code = "DESTINATION_UNREACHABLE"
    retryable = True
