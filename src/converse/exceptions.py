"""
Custom exception hierarchy for the converse cache service.

All exceptions inherit from ConverseError, which provides optional context
for structured error handling and logging.
"""

from __future__ import annotations

from typing import Any


class ConverseError(Exception):
    """Base exception for all converse errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(ConverseError):
    """Raised when configuration is invalid or missing.

    Examples:
        - Missing REDIS_URL with the redis backend
        - Authentication requested without an introspection endpoint
    """

    pass


class CacheError(ConverseError):
    """Raised when the cache store cannot complete an operation.

    Context should include:
        - key: The cache key (or pattern) involved
        - operation: get, set, delete, scan
        - error: The underlying error message
    """

    pass


class BackendError(ConverseError):
    """Raised when a data backend RPC fails.

    Context should include:
        - path: The backend function path (e.g. "conversations:get")
        - status_code: HTTP status code if applicable
        - error: The backend's error message
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, context)
        self.status_code = status_code


class AuthenticationError(ConverseError):
    """Raised when a caller cannot be authenticated."""

    pass


class IdentityProviderError(ConverseError):
    """Raised when the identity provider is unreachable or failing.

    Unlike AuthenticationError this says nothing about the token itself.
    """

    pass


class NotFoundError(ConverseError):
    """Raised when a user or resource does not exist in the backend.

    Context should include:
        - resource: The kind of resource (user, room, conversation)
        - id: The identifier that was looked up
    """

    pass


class InvalidRequestError(ConverseError):
    """Raised when a request is missing a required field."""

    pass


class InvalidEventError(InvalidRequestError):
    """Raised when an invalidation event payload is structurally invalid.

    Context should include:
        - type: The event type
        - field: The field that is missing or has the wrong type
    """

    pass
