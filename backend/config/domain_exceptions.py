from __future__ import annotations


class DomainError(Exception):
    """
    Base class for predictable domain/use-case errors.

    `error_code` is the stable identifier recorded on dispatch results and
    logs; subclasses override it.
    """

    error_code: str = "DOMAIN_ERROR"
    retryable: bool = False


class ValidationError(DomainError):
    error_code = "VALIDATION_ERROR"


class NotFoundError(DomainError):
    error_code = "NOT_FOUND"


class ServiceUnavailableError(DomainError):
    error_code = "SERVICE_UNAVAILABLE"
    retryable = True


class ConfigurationError(DomainError):
    """
    Missing/invalid server-side configuration required to perform an operation.
    """

    error_code = "CONFIGURATION_ERROR"


class GatewayError(DomainError):
    """
    Base exception for external gateway/integration failures.

    Subclasses should set `gateway_name` as a class attribute or instance attribute.
    """

    error_code = "GATEWAY_ERROR"
    gateway_name: str | None = None


class GatewayValidationError(ValidationError):
    """
    Validation error related to a specific external gateway/integration.
    """

    gateway_name: str | None = None
