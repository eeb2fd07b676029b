"""
Shared exception definitions.

Every error the service surfaces to a webhook sender or API client derives
from AppException, which carries a stable code and an HTTP status.
"""

from typing import Any


class AppException(Exception):
    """Base application exception."""

    def __init__(
        self,
        message: str,
        code: str = "APP_ERROR",
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class AuthenticationFailure(AppException):
    """Webhook signature missing or invalid."""

    def __init__(
        self,
        message: str = "Invalid webhook signature",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message=message, code="AUTHENTICATION_FAILED", status_code=401, details=details)


class NotFoundError(AppException):
    """Referenced call, session or stream does not exist."""

    def __init__(
        self,
        message: str = "Resource not found",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message=message, code="NOT_FOUND", status_code=404, details=details)


class ValidationFailure(AppException):
    """Malformed or incomplete payload."""

    def __init__(
        self,
        message: str = "Validation failed",
        field: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = dict(details or {})
        if field:
            details.setdefault("field", field)
        super().__init__(message=message, code="VALIDATION_ERROR", status_code=400, details=details)
        self.field = field


class TransientProviderFailure(AppException):
    """Network or socket failure while talking to a voice backend."""

    def __init__(
        self,
        message: str = "Voice provider unavailable",
        provider: str | None = None,
        code: str = "PROVIDER_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        details = dict(details or {})
        if provider:
            details.setdefault("provider", provider)
        super().__init__(message=message, code=code, status_code=502, details=details)
        self.provider = provider


class ConfigurationError(AppException):
    """Configuration error."""

    def __init__(
        self,
        message: str = "Configuration error",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message=message, code="CONFIGURATION_ERROR", status_code=500, details=details)
