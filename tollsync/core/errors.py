"""
Error kinds surfaced by the import and mapping services.

Routers translate these into HTTP status codes; anything else is treated as
an internal failure and reported with a generic message.
"""
from typing import Any, Dict, Optional


class TollSyncError(Exception):
    """Base class for errors that are safe to show to callers."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(TollSyncError):
    """Malformed, missing or out-of-range input (INVALID_ARGUMENT)."""

    status_code = 400


class NotFoundError(TollSyncError):
    """Unknown session, record or mapping id (NOT_FOUND)."""

    status_code = 404


class ConflictError(TollSyncError):
    """Duplicate creation or a policy-forbidden second active mapping (ALREADY_EXISTS)."""

    status_code = 409


class StorageError(TollSyncError):
    """The storage backend failed; the original exception is kept for logs only."""

    def __init__(self, message: str = "Internal error", original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error
