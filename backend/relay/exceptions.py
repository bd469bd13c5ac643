from __future__ import annotations

from config.domain_exceptions import GatewayError, NotFoundError, ValidationError


class MalformedDirective(ValidationError):
    """A subscription's routing directive cannot be used; not retried."""

    error_code = "MALFORMED_DIRECTIVE"


class UnknownHandler(NotFoundError):
    error_code = "UNKNOWN_HANDLER"


class MissingRequiredField(ValidationError):
    error_code = "MISSING_REQUIRED_FIELD"

    def __init__(self, fields: list[str]):
        self.fields = list(fields)
        super().__init__(f"Missing required field(s): {', '.join(self.fields)}")


class InvalidFieldValue(ValidationError):
    error_code = "INVALID_FIELD_VALUE"

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")


class ForwardingRejected(GatewayError):
    """The forwarding endpoint answered with a non-2xx status."""

    error_code = "DESTINATION_REJECTED"
    gateway_name = "Forwarding endpoint"

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DestinationUnreachable(GatewayError):
    """The forwarding endpoint timed out or could not be connected to."""

    error_code = "DESTINATION_UNREACHABLE"
    gateway_name = "Forwarding endpoint"
    retryable = True


class InvalidNotification(ValidationError):
    """A batch entry is not a usable change notification."""

    error_code = "INVALID_NOTIFICATION"
