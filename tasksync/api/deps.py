"""Shared router dependencies and error translation."""

from fastapi import HTTPException, status

from tasksync.errors import (
    AuthenticationError,
    CapabilityNotSupportedError,
    ConfigValidationError,
    NotFoundError,
    RateLimitError,
    SourceError,
)
from tasksync.services.sync_manager import SyncManager, sync_manager


def get_sync_manager() -> SyncManager:
    """Dependency returning the process-wide sync manager."""
    return sync_manager


def http_error(e: SourceError) -> HTTPException:
    """Translate a source error into the matching HTTP status."""
    if isinstance(e, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, ConfigValidationError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(e, CapabilityNotSupportedError):
        code = status.HTTP_501_NOT_IMPLEMENTED
    elif isinstance(e, AuthenticationError):
        code = status.HTTP_401_UNAUTHORIZED
    elif isinstance(e, RateLimitError):
        code = status.HTTP_429_TOO_MANY_REQUESTS
    else:
        code = status.HTTP_502_BAD_GATEWAY
    return HTTPException(status_code=code, detail=str(e))
