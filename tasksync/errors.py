"""Exceptions raised by remote clients and source plugins."""

from typing import Any


class SourceError(Exception):
    """Base exception for errors talking to an external task source."""

    def __init__(self, message: str, system: str | None = None, retriable: bool = False):
        super().__init__(message)
        self.system = system
        self.retriable = retriable


class AuthenticationError(SourceError):
    """Authentication failed (token expired, invalid credentials, no access).

    Never retried; the user has to re-authenticate.
    """

    pass


class NotFoundError(SourceError):
    """External object not found."""

    pass


class RateLimitError(SourceError):
    """Rate limit exceeded and the retry budget is spent."""

    def __init__(self, message: str, retry_after: float | None = None, **kwargs: Any):
        super().__init__(message, retriable=True, **kwargs)
        self.retry_after = retry_after


class TransportError(SourceError):
    """Network failure or unexpected response status."""

    def __init__(self, message: str, status_code: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class ConfigValidationError(SourceError):
    """Source configuration is incomplete or invalid."""

    pass


class CapabilityNotSupportedError(SourceError):
    """The plugin does not implement an optional capability."""

    pass


class ToolCallError(SourceError):
    """A tool call failed, or its payload carried an application-level error."""

    pass
