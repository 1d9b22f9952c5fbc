"""Custom exceptions for the Inventory Alerting Service."""

from typing import Any

from fastapi import status


class AlertingServiceError(Exception):
    """Base exception for all alerting errors.

    ``retryable`` tells the event bus whether a failed handler may be retried
    or must go straight to the dead-letter topic.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str | None = None,
        details: list[dict[str, Any]] | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code or self.__class__.__name__
        self.details = details or []
        self.context = context or {}


class InvalidEventError(AlertingServiceError):
    """Raised when an event payload fails schema validation."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(
            message, status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, **kwargs
        )


class NotFoundError(AlertingServiceError):
    """Raised when a requested alert does not exist."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, status_code=status.HTTP_404_NOT_FOUND, **kwargs)


class IllegalTransitionError(AlertingServiceError):
    """Raised when an alert status change is not permitted."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, status_code=status.HTTP_409_CONFLICT, **kwargs)


class StorageConflictError(AlertingServiceError):
    """Raised when a concurrent writer won the race for the same alert."""

    retryable = True

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, status_code=status.HTTP_409_CONFLICT, **kwargs)


class ServiceUnavailableError(AlertingServiceError):
    """Raised when a dependent service is unavailable."""

    retryable = True

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(
            message, status_code=status.HTTP_503_SERVICE_UNAVAILABLE, **kwargs
        )


class StorageUnavailableError(ServiceUnavailableError):
    """Raised when the alert store cannot be reached."""


class BrokerUnavailableError(ServiceUnavailableError):
    """Raised when the event broker rejects or times out a publish."""
