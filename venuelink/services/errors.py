"""
Service layer exceptions.

Every failure that leaves the transport or the retry engine is one of these,
carrying a machine-readable ``code`` and the original response where one was
received.
"""

from typing import Any

import httpx


class ServiceError(Exception):
    """Base exception for service layer errors."""

    code: str = "UNKNOWN_ERROR"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        service_id: str | None = None,
        code: str | None = None,
        status_code: int | None = None,
        response: httpx.Response | None = None,
        details: Any = None,
    ):
        self.service_id = service_id
        self.status_code = status_code
        self.response = response
        self.details = details
        if code:
            self.code = code
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)


class NetworkError(ServiceError):
    """No response was received."""

    code = "NETWORK_ERROR"
    retryable = True


class RequestTimeoutError(NetworkError):
    """Request timed out and was abandoned locally."""

    code = "TIMEOUT_ERROR"

    def __init__(self, service_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Request to service '{service_id}' timed out after {timeout}s",
            service_id=service_id,
        )


class AuthError(ServiceError):
    """Authentication was rejected (HTTP 401)."""

    code = "UNAUTHORIZED"


class SessionExpiredError(AuthError):
    """
    Credential renewal failed or a renewed credential was rejected again.

    Terminal for the current session: the application should log out.
    """

    code = "SESSION_EXPIRED"


class PermissionDeniedError(ServiceError):
    """Authorization was rejected (HTTP 403)."""

    code = "FORBIDDEN"


class ValidationError(ServiceError):
    """The request was malformed (HTTP 400/422)."""

    code = "VALIDATION_ERROR"


class ClientError(ServiceError):
    """Any other 4xx response."""

    pass


class RateLimitError(ClientError):
    """Rate limit exceeded (HTTP 429)."""

    code = "TOO_MANY_REQUESTS"
    retryable = True

    def __init__(self, message: str, retry_after: float | None = None, **kwargs: Any):
        self.retry_after = retry_after
        if retry_after:
            message += f", retry after {retry_after}s"
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """5xx response."""

    retryable = True


class StaleBundleError(ServiceError):
    """
    The client is talking to a deployment it was not built for.

    Raised when an HTML page comes back where JSON was expected. Retrying
    will not help; the host application should reload itself.
    """

    code = "STALE_BUNDLE"


class BatchItemMissingError(ServiceError):
    """The batch executor returned no result for an item."""

    code = "BATCH_ITEM_MISSING"

    def __init__(self, batch_key: str, item_key: str):
        self.batch_key = batch_key
        self.item_key = item_key
        super().__init__(f"No result for key: {item_key}", service_id=batch_key)


_STATUS_CODES: dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "TOO_MANY_REQUESTS",
    500: "INTERNAL_SERVER_ERROR",
    502: "SERVICE_UNAVAILABLE",
    503: "SERVICE_UNAVAILABLE",
    504: "TIMEOUT_ERROR",
}

USER_MESSAGES: dict[str, str] = {
    "NETWORK_ERROR": (
        "Unable to connect to the server. "
        "Please check your internet connection and try again."
    ),
    "TIMEOUT_ERROR": "The request took too long. Please try again.",
    "UNAUTHORIZED": "Your session has expired. Please log in again.",
    "SESSION_EXPIRED": "Your session has expired. Please log in again.",
    "FORBIDDEN": "You don't have permission to perform this action.",
    "VALIDATION_ERROR": "Please check your input and try again.",
    "NOT_FOUND": "The requested resource was not found.",
    "CONFLICT": "This action conflicts with existing data.",
    "TOO_MANY_REQUESTS": "Too many requests. Please wait a moment and try again.",
    "INTERNAL_SERVER_ERROR": "Something went wrong on our end. Please try again later.",
    "SERVICE_UNAVAILABLE": "The service is temporarily unavailable. Please try again later.",
    "STALE_BUNDLE": "A new version is available. Please reload the application.",
}


def error_class_for_status(status_code: int) -> type[ServiceError]:
    """Pick the taxonomy class for an HTTP error status."""
    if status_code == 401:
        return AuthError
    if status_code == 403:
        return PermissionDeniedError
    if status_code in (400, 422):
        return ValidationError
    if status_code == 429:
        return RateLimitError
    if status_code >= 500:
        return ServerError
    return ClientError


def default_code_for_status(status_code: int) -> str:
    return f"HTTP_{status_code}"


def user_message(error: BaseException) -> str:
    """Map an error to text that can be shown to an end user."""
    code = getattr(error, "code", None)
    if code in USER_MESSAGES:
        return USER_MESSAGES[code]

    status_code = getattr(error, "status_code", None)
    if status_code in _STATUS_CODES:
        return USER_MESSAGES.get(_STATUS_CODES[status_code], str(error))

    if isinstance(error, ValidationError):
        return str(error)

    return "An unexpected error occurred. Please try again."
