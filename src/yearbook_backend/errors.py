"""Typed failures raised across the yearbook subsystem boundary."""

from __future__ import annotations

from .models import DenialReason


class YearbookError(Exception):
    """Base exception for all yearbook subsystem errors."""

    def __init__(self, message: str, *args, **kwargs):
        self.message = message
        super().__init__(message, *args, **kwargs)


class RemoteStoreUnavailable(YearbookError):
    """Raised when the object store keeps failing after bounded retries."""

    pass


class SourceDocumentUnreadable(YearbookError):
    """Raised when an uploaded artifact cannot be opened as an image or PDF."""

    pass


class NotFoundError(YearbookError):
    """Raised when a document, page or batch does not exist."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message)


class AccessDenied(YearbookError):
    """Raised when an actor may not receive a page."""

    def __init__(self, reason: DenialReason, message: str = "Access denied", anonymous: bool = False):
        self.reason = reason
        self.anonymous = anonymous or reason is DenialReason.UNAUTHENTICATED
        super().__init__(message)


class InvariantViolation(YearbookError):
    """Raised when an operation would leave a document inconsistent."""

    pass


class IngestionError(YearbookError):
    """Raised once an ingestion has been rolled back."""

    pass
