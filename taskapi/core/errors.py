from typing import Any

from fastapi import status


class APIError(Exception):
    """Error that maps onto a JSON response with at least an ``error`` field."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: str = "Internal server error"

    def __init__(
        self,
        error: str | None = None,
        *,
        headers: dict[str, str] | None = None,
        **extra: Any,
    ):
        self.error = error or self.error
        self.headers = headers or {}
        self.extra = extra
        super().__init__(self.error)

    def to_content(self) -> dict[str, Any]:
        return {"error": self.error, **self.extra}


class Unauthenticated(APIError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "Unauthorized"


class RateLimited(APIError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error = "Too many requests"


class ValidationFailed(APIError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "Validation failed"

    def __init__(self, details: list[dict[str, Any]]):
        super().__init__(details=details)


class NotFound(APIError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "Task not found"


class Internal(APIError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "Internal server error"


class PersistenceError(Internal):
    """A database operation failed; the public message stays generic."""

    def __init__(self, error: str, operation: str, table: str, cause: Exception):
        super().__init__(error)
        self.operation = operation
        self.table = table
        self.cause = cause


class IdentityProviderError(Exception):
    """The identity provider could not be reached or answered unexpectedly."""
