from __future__ import annotations

from config.domain_exceptions import GatewayError, GatewayValidationError

GRAPH_GATEWAY = "Microsoft Graph"


class InvalidResource(GatewayValidationError):
    """A notification's resource locator does not name a SharePoint list."""

    error_code = "INVALID_NOTIFICATION"
    gateway_name = GRAPH_GATEWAY


class ItemUnavailable(GatewayError):
    """The list item named by a notification could not be fetched."""

    error_code = "ITEM_UNAVAILABLE"
    gateway_name = GRAPH_GATEWAY

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
